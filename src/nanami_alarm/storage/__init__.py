"""Persistence for last-seen markers."""

from nanami_alarm.storage.repos import LastSeenMarkerDTO, LastSeenRepository, StateStore

__all__ = ["LastSeenMarkerDTO", "LastSeenRepository", "StateStore"]
