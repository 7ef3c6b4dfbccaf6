"""CWE catalog and Korean localization."""

from nanami_alarm.cwe.catalog import CweCatalog, CweLocalizer, LocalizedWeakness

__all__ = ["CweCatalog", "CweLocalizer", "LocalizedWeakness"]
