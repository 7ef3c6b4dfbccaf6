"""Data models for NVD CVE API 2.0 responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from nanami_alarm.sources.base import parse_timestamp

NVD_DETAIL_URL = "https://nvd.nist.gov/vuln/detail/{cve_id}"

# Metric keys in preference order
CVSS_METRIC_KEYS = ("cvssMetricV40", "cvssMetricV31", "cvssMetricV30", "cvssMetricV2")


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


@dataclass(frozen=True)
class CvssSummary:
    """The CVSS data shown in alarms, from the newest available metric."""

    version: str
    base_score: float
    base_severity: str
    vector_string: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_metrics(cls, metrics: dict[str, Any] | None) -> CvssSummary | None:
        """Pick the first metric in v4.0, v3.1, v3.0, v2 order."""
        if not isinstance(metrics, dict):
            return None

        for key in CVSS_METRIC_KEYS:
            entries = _as_list(metrics.get(key))
            if not entries or not isinstance(entries[0], dict):
                continue
            entry = entries[0]
            data = entry.get("cvssData") or {}
            if not isinstance(data, dict):
                continue
            # v2 keeps the severity next to cvssData
            severity = data.get("baseSeverity") or entry.get("baseSeverity") or "UNKNOWN"
            try:
                score = float(data.get("baseScore", 0) or 0)
            except (TypeError, ValueError):
                score = 0.0
            return cls(
                version=str(data.get("version", key.removeprefix("cvssMetricV"))),
                base_score=score,
                base_severity=str(severity).upper(),
                vector_string=str(data.get("vectorString", "")),
                data=data,
            )
        return None


@dataclass(frozen=True)
class CveRecord:
    """A vulnerability from the NVD ``vulnerabilities[].cve`` object."""

    cve_id: str
    source_identifier: str
    published: datetime | None
    last_modified: datetime | None
    vuln_status: str
    descriptions: dict[str, str]
    cvss: CvssSummary | None
    weakness_ids: tuple[str, ...]
    references: tuple[dict[str, Any], ...]
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CveRecord:
        """Create a CveRecord from a ``vulnerabilities[]`` entry or bare cve object."""
        cve = data.get("cve", data)
        if not isinstance(cve, dict) or not cve.get("id"):
            raise ValueError("CVE entry without id")

        descriptions: dict[str, str] = {}
        for item in _as_list(cve.get("descriptions")):
            if isinstance(item, dict) and item.get("value"):
                descriptions.setdefault(str(item.get("lang", "en")), str(item["value"]))

        weakness_ids: list[str] = []
        for weakness in _as_list(cve.get("weaknesses")):
            if not isinstance(weakness, dict):
                continue
            for desc in _as_list(weakness.get("description")):
                value = desc.get("value") if isinstance(desc, dict) else None
                if value and value not in weakness_ids:
                    weakness_ids.append(str(value))

        references = tuple(r for r in _as_list(cve.get("references")) if isinstance(r, dict))

        return cls(
            cve_id=str(cve["id"]),
            source_identifier=str(cve.get("sourceIdentifier", "")),
            published=parse_timestamp(cve.get("published")),
            last_modified=parse_timestamp(cve.get("lastModified")),
            vuln_status=str(cve.get("vulnStatus", "")),
            descriptions=descriptions,
            cvss=CvssSummary.from_metrics(cve.get("metrics")),
            weakness_ids=tuple(weakness_ids),
            references=references,
            raw=cve,
        )

    @property
    def link(self) -> str:
        return NVD_DETAIL_URL.format(cve_id=self.cve_id)

    @property
    def description_en(self) -> str:
        if "en" in self.descriptions:
            return self.descriptions["en"]
        return next(iter(self.descriptions.values()), "")

    @property
    def primary_weakness(self) -> str | None:
        return self.weakness_ids[0] if self.weakness_ids else None

    @property
    def provider_domain(self) -> str:
        """Reduce the source identifier to its registrable domain.

        ``cna@vuldb.com`` -> ``vuldb.com``, ``psirt.example.co`` -> ``example.co``.
        """
        domain = self.source_identifier.rsplit("@", 1)[-1]
        parts = domain.split(".")
        return ".".join(parts[-2:]) if len(parts) > 2 else domain


@dataclass(frozen=True)
class CveChangeDetail:
    """One entry of ``cveChanges[].change.details``."""

    action: str
    type: str
    old_value: str | None = None
    new_value: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CveChangeDetail:
        old_value = data.get("oldValue")
        new_value = data.get("newValue")
        return cls(
            action=str(data.get("action") or ""),
            type=str(data.get("type") or ""),
            old_value=None if old_value is None else str(old_value),
            new_value=None if new_value is None else str(new_value),
        )

    def to_dict(self) -> dict[str, str]:
        out = {"action": self.action, "type": self.type}
        if self.old_value is not None:
            out["oldValue"] = self.old_value
        if self.new_value is not None:
            out["newValue"] = self.new_value
        return out


@dataclass(frozen=True)
class CveChange:
    """A change-history event from the NVD CVE history API."""

    cve_id: str
    event_name: str
    change_id: str
    source_identifier: str
    created: datetime | None
    details: tuple[Any, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CveChange:
        """Create a CveChange from a ``cveChanges[]`` entry."""
        change = data.get("change", data)
        if not isinstance(change, dict):
            raise ValueError("change entry is not an object")
        return cls(
            cve_id=str(change.get("cveId", "")),
            event_name=str(change.get("eventName", "")),
            change_id=str(change.get("cveChangeId", "")),
            source_identifier=str(change.get("sourceIdentifier", "")),
            created=parse_timestamp(change.get("created")),
            details=tuple(_as_list(change.get("details"))),
        )
