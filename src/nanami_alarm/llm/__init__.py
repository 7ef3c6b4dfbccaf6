"""LLM summarization."""

from nanami_alarm.llm.summarizer import NullSummarizer, OpenAISummarizer, Summarizer

__all__ = ["NullSummarizer", "OpenAISummarizer", "Summarizer"]
