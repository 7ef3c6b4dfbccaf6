"""Nanami Alarm - security feed alarms for Discord.

Polls the NVD CVE API, Hacker News and a threat-intelligence RSS feed,
summarizes new items in Korean with an LLM and posts them to Discord.
"""

__version__ = "0.1.0"
