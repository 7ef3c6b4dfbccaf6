"""Feed sources - NVD CVE, Hacker News and threat-intel RSS adapters."""

from nanami_alarm.sources.base import EventPayload, SourceAdapter, SourceOptions
from nanami_alarm.sources.cve import CveEventType, CvePayload, CveSource
from nanami_alarm.sources.hackernews import HackerNewsPayload, HackerNewsSource
from nanami_alarm.sources.threat_intel import ThreatIntelPayload, ThreatIntelSource

__all__ = [
    "CveEventType",
    "CvePayload",
    "CveSource",
    "EventPayload",
    "HackerNewsPayload",
    "HackerNewsSource",
    "SourceAdapter",
    "SourceOptions",
    "ThreatIntelPayload",
    "ThreatIntelSource",
]
