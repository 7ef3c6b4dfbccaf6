"""Significance filter for CVE change-history details.

NVD emits a change event for every edit of a CVE record, most of which are
noise for an alarm channel. ``filter_significant_details`` keeps the details
that matter and tags each with the reasons it was kept. The function is
pure and total: malformed records simply match no reason.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from nanami_alarm.sources.models import CveChangeDetail


class DetailReason(str, Enum):
    """Why a change detail is worth surfacing."""

    CVSS_UPDATED = "CVSS_UPDATED"
    CPE_CHANGED = "CPE_CHANGED"
    CONFIG_CHANGED = "CONFIG_CHANGED"
    CWE_CHANGED = "CWE_CHANGED"
    DESCRIPTION_UPDATED = "DESCRIPTION_UPDATED"
    EXPLOIT_REFERENCE_ADDED = "EXPLOIT_REFERENCE_ADDED"


DEFAULT_EXPLOIT_HINTS = (
    "exploit",
    "poc",
    "metasploit",
    "packetstorm",
    "0day",
    "weaponiz",
    "github.com",
    "gist.github.com",
)


@dataclass(frozen=True)
class SignificancePolicy:
    """Product policy for which change details are significant.

    Attributes:
        enabled_reasons: Reasons that may be reported; others are ignored.
        exploit_hints: Lower-case substrings that mark an added reference
            as an exploit/PoC link.
    """

    enabled_reasons: frozenset[DetailReason] = field(
        default_factory=lambda: frozenset(DetailReason)
    )
    exploit_hints: tuple[str, ...] = DEFAULT_EXPLOIT_HINTS


DEFAULT_POLICY = SignificancePolicy()


@dataclass(frozen=True)
class FilteredDetail:
    """A significant detail and the reasons it was kept."""

    detail: CveChangeDetail
    reasons: tuple[DetailReason, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.detail.to_dict(),
            "reasons": [reason.value for reason in self.reasons],
        }


def _has_diff(detail: CveChangeDetail) -> bool:
    if detail.action != "Updated":
        return False
    old_value = (detail.old_value or "").strip()
    new_value = (detail.new_value or "").strip()
    return bool(new_value) and old_value != new_value


def _looks_like_exploit_ref(detail: CveChangeDetail, hints: tuple[str, ...]) -> bool:
    if detail.type != "Reference" or detail.action != "Added":
        return False
    value = (detail.new_value or "").lower()
    return any(hint in value for hint in hints)


def detail_reasons(
    detail: CveChangeDetail,
    policy: SignificancePolicy = DEFAULT_POLICY,
) -> tuple[DetailReason, ...]:
    """Classify one change detail."""
    reasons: list[DetailReason] = []

    if detail.type.startswith("CVSS") and _has_diff(detail):
        reasons.append(DetailReason.CVSS_UPDATED)

    if detail.type in ("CPE", "Configuration") and detail.action in ("Added", "Updated"):
        reasons.append(
            DetailReason.CPE_CHANGED if detail.type == "CPE" else DetailReason.CONFIG_CHANGED
        )

    if detail.type == "CWE" and detail.action in ("Added", "Updated"):
        reasons.append(DetailReason.CWE_CHANGED)

    # Added descriptions are the initial record, not an update
    if detail.type == "Description" and detail.action == "Updated":
        reasons.append(DetailReason.DESCRIPTION_UPDATED)

    if _looks_like_exploit_ref(detail, policy.exploit_hints):
        reasons.append(DetailReason.EXPLOIT_REFERENCE_ADDED)

    return tuple(r for r in reasons if r in policy.enabled_reasons)


def _coerce(record: Any) -> CveChangeDetail | None:
    if isinstance(record, CveChangeDetail):
        return record
    if isinstance(record, dict):
        return CveChangeDetail.from_dict(record)
    return None


def filter_significant_details(
    details: Iterable[Any] | None,
    policy: SignificancePolicy = DEFAULT_POLICY,
) -> list[FilteredDetail]:
    """Keep the significant change details, in input order.

    Args:
        details: Raw ``details`` entries (dicts) or parsed CveChangeDetail
            objects. None and non-record entries are ignored.
        policy: Reason taxonomy and exploit heuristics to apply.

    Returns:
        A new list of FilteredDetail; the same input always yields an equal list.
    """
    out: list[FilteredDetail] = []
    for record in details or ():
        detail = _coerce(record)
        if detail is None:
            continue
        reasons = detail_reasons(detail, policy)
        if reasons:
            out.append(FilteredDetail(detail=detail, reasons=reasons))
    return out
