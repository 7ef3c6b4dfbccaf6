"""NVD CVE source.

Polls the NVD CVE API 2.0 twice per tick: once for CVEs published inside the
window (``NEW``) and once for CVEs modified inside it (``MODIFIED``). Modified
CVEs are enriched with the newest change-history event and kept only when
the change carries a significant detail.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from nanami_alarm.alerter.formatter import (
    build_embed,
    embed_field,
    format_in_timezone,
    format_kst,
    severity_to_color,
    to_kst,
)
from nanami_alarm.alerter.models import DiscordOutbound, LinkButton
from nanami_alarm.errors import FetchError, SummarizationError
from nanami_alarm.llm.summarizer import extract_json_object
from nanami_alarm.sources.base import EventPayload, SourceAdapter, SourceOptions
from nanami_alarm.sources.models import CveChange, CveRecord
from nanami_alarm.sources.modified import (
    DEFAULT_POLICY,
    FilteredDetail,
    SignificancePolicy,
    filter_significant_details,
)

if TYPE_CHECKING:
    from nanami_alarm.cwe.catalog import CweLocalizer
    from nanami_alarm.llm.summarizer import Summarizer
    from nanami_alarm.scheduler.window import AlarmWindow

logger = logging.getLogger(__name__)

NVD_CVE_API_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"
NVD_HISTORY_API_URL = "https://services.nvd.nist.gov/rest/json/cvehistory/2.0"
DEFAULT_POLL_INTERVAL_MS = 10 * 60 * 1000
RESULTS_PER_PAGE = 200

SUMMARY_FALLBACK = "요약 생성 실패"
VECTOR_SUMMARY_FALLBACK = "벡터 요약 생성 실패"
REFERENCE_DIGEST_FALLBACK = "참고 링크 생성 실패"

# Search limits accepted by NVD
MAX_SEARCH_PAGE_SIZE = 200
MAX_SEARCH_PAGES = 5
DEFAULT_SEARCH_PAGE_SIZE = 20
SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
SORT_FIELDS = ("published", "lastModified", "cvssScore")


class CveEventType(str, Enum):
    """Whether a CVE alarm announces a new or a changed record."""

    NEW = "NEW"
    MODIFIED = "MODIFIED"


@dataclass(kw_only=True)
class CvePayload(EventPayload):
    """A CVE alarm item.

    ``item_id`` is ``"<TYPE>:<CVE id>"`` so a NEW and a later MODIFIED alarm
    for the same CVE are distinct items.
    """

    type: CveEventType
    record: CveRecord
    vector_summary: str = VECTOR_SUMMARY_FALLBACK
    reference_digest: str = REFERENCE_DIGEST_FALLBACK
    modified_details: list[FilteredDetail] = field(default_factory=list)
    modified_summary: str | None = None
    modified_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.item_id:
            self.item_id = f"{self.type.value}:{self.record.cve_id}"
        super().__post_init__()

    @property
    def cve_id(self) -> str:
        return self.record.cve_id


@dataclass(frozen=True)
class CveSummary:
    """Korean LLM summary of one CVE."""

    summary: str = SUMMARY_FALLBACK
    vector_summary: str = VECTOR_SUMMARY_FALLBACK
    reference_digest: str = REFERENCE_DIGEST_FALLBACK

    @classmethod
    def from_response(cls, text: str | None) -> CveSummary:
        """Parse the summarizer JSON; missing or blank keys use the fallbacks.

        Raises:
            SummarizationError: If the response holds no JSON object.
        """
        data = extract_json_object(text)

        def pick(key: str, fallback: str) -> str:
            value = data.get(key)
            return value.strip() if isinstance(value, str) and value.strip() else fallback

        return cls(
            summary=pick("summary", SUMMARY_FALLBACK),
            vector_summary=pick("vectorSummary", VECTOR_SUMMARY_FALLBACK),
            reference_digest=pick("referenceDigest", REFERENCE_DIGEST_FALLBACK),
        )


def format_nvd_timestamp(value: datetime) -> str:
    """Format a datetime the way NVD date filters expect (UTC, milliseconds)."""
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def default_cve_options(channel_id: str = "") -> SourceOptions:
    return SourceOptions(
        poll_interval_ms=DEFAULT_POLL_INTERVAL_MS,
        remote_endpoint=NVD_CVE_API_URL,
        destination_channel_id=channel_id,
        timezone="UTC",
    )


@dataclass(frozen=True)
class CveSearchSpec:
    """Structured CVE search produced from a natural language question.

    Attributes:
        keywords: Words joined into NVD ``keywordSearch``.
        severity: CVSS v3 severities (``LOW``..``CRITICAL``).
        start_date: First publication day (``YYYY-MM-DD``).
        end_date: Last publication day, inclusive.
        page_number: 1-based first page.
        page_size: Results per page (1..200).
        max_pages: Pages to fetch (1..5).
        sort_field: ``published``, ``lastModified`` or ``cvssScore``.
        sort_direction: ``asc`` or ``desc``.
    """

    keywords: tuple[str, ...] = ()
    severity: tuple[str, ...] = ()
    start_date: str | None = None
    end_date: str | None = None
    page_number: int = 1
    page_size: int = DEFAULT_SEARCH_PAGE_SIZE
    max_pages: int = 1
    sort_field: str | None = None
    sort_direction: str = "desc"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CveSearchSpec:
        """Build a spec from the LLM JSON, clamping out-of-range values."""

        def as_int(value: Any, default: int) -> int:
            try:
                return int(value)
            except (TypeError, ValueError):
                return default

        def as_day(value: Any) -> str | None:
            return (value.strip() or None) if isinstance(value, str) else None

        def as_strings(value: Any) -> tuple[str, ...]:
            if isinstance(value, str):
                value = value.split()
            if not isinstance(value, list):
                return ()
            return tuple(str(v).strip() for v in value if str(v).strip())

        date_range = data.get("dateRange") if isinstance(data.get("dateRange"), dict) else {}
        page = data.get("page") if isinstance(data.get("page"), dict) else {}
        sort = data.get("sort") if isinstance(data.get("sort"), dict) else {}

        severity = tuple(s.upper() for s in as_strings(data.get("severity")) if s.upper() in SEVERITIES)
        sort_field = sort.get("field") if sort.get("field") in SORT_FIELDS else None

        return cls(
            keywords=as_strings(data.get("keywords")),
            severity=severity,
            start_date=as_day(date_range.get("start")),
            end_date=as_day(date_range.get("end")),
            page_number=max(1, as_int(page.get("pageNumber"), 1)),
            page_size=max(1, min(as_int(page.get("pageSize"), DEFAULT_SEARCH_PAGE_SIZE), MAX_SEARCH_PAGE_SIZE)),
            max_pages=max(1, min(as_int(page.get("maxPages"), 1), MAX_SEARCH_PAGES)),
            sort_field=sort_field,
            sort_direction="asc" if sort.get("direction") == "asc" else "desc",
        )

    @classmethod
    def from_question(cls, question: str) -> CveSearchSpec:
        """Plain keyword search used when the question cannot be interpreted."""
        return cls(keywords=tuple(question.split()))

    def to_params(self, start_index: int) -> dict[str, str]:
        params: dict[str, str] = {
            "startIndex": str(start_index),
            "resultsPerPage": str(self.page_size),
        }
        if self.keywords:
            params["keywordSearch"] = " ".join(self.keywords)
        # NVD accepts a single cvssV3Severity value
        if len(self.severity) == 1:
            params["cvssV3Severity"] = self.severity[0]
        if self.start_date or self.end_date:
            start, end = self._date_bounds()
            params["pubStartDate"] = format_nvd_timestamp(start)
            params["pubEndDate"] = format_nvd_timestamp(end)
        return params

    def _date_bounds(self) -> tuple[datetime, datetime]:
        # NVD requires both bounds and a range of at most 120 days
        end = _parse_day(self.end_date)
        start = _parse_day(self.start_date)
        if end is not None:
            end = end + timedelta(days=1) - timedelta(milliseconds=1)
        if start is None:
            start = (end or datetime.now(UTC)) - timedelta(days=120) + timedelta(milliseconds=1)
        if end is None:
            end = min(start + timedelta(days=120), datetime.now(UTC))
        if end - start > timedelta(days=120):
            start = end - timedelta(days=120)
        return start, end

    def matches_severity(self, record: CveRecord) -> bool:
        if not self.severity:
            return True
        return record.cvss is not None and record.cvss.base_severity in self.severity

    def sort(self, records: list[CveRecord]) -> list[CveRecord]:
        """Return records ordered by the requested field; unsorted when none."""
        if self.sort_field is None:
            return list(records)
        reverse = self.sort_direction == "desc"
        epoch = datetime.min.replace(tzinfo=UTC)

        def key(record: CveRecord) -> Any:
            if self.sort_field == "cvssScore":
                return record.cvss.base_score if record.cvss else 0.0
            if self.sort_field == "lastModified":
                return record.last_modified or epoch
            return record.published or epoch

        return sorted(records, key=key, reverse=reverse)


def _parse_day(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").replace(tzinfo=UTC)
    except ValueError:
        return None


def _fallback_change_summary(details: list[FilteredDetail]) -> str:
    lines = []
    for item in details:
        reasons = ", ".join(reason.value for reason in item.reasons)
        lines.append(f"- {item.detail.type} {item.detail.action} ({reasons})")
    return "\n".join(lines)


class CveSource(SourceAdapter[CvePayload]):
    """NVD CVE alarm source.

    Example:
        ```python
        source = CveSource(default_cve_options("123"), http=client, summarizer=summarizer)
        payloads = await source.fetch_new_items(window)
        ```
    """

    name = "cve"

    def __init__(
        self,
        options: SourceOptions,
        *,
        http: httpx.AsyncClient,
        summarizer: Summarizer,
        cwe: CweLocalizer | None = None,
        api_key: str | None = None,
        history_url: str = NVD_HISTORY_API_URL,
        policy: SignificancePolicy = DEFAULT_POLICY,
    ) -> None:
        """Initialize the source.

        Args:
            options: Source options (endpoint, interval, channel).
            http: Shared HTTP client.
            summarizer: LLM collaborator.
            cwe: Optional CWE localizer for weakness names.
            api_key: NVD API key sent in the ``apiKey`` header.
            history_url: NVD CVE change-history endpoint.
            policy: Which change details count as significant.
        """
        super().__init__(options, http=http, summarizer=summarizer)
        self._cwe = cwe
        self._headers = {"apiKey": api_key} if api_key else {}
        self._history_url = history_url
        self._policy = policy

    async def fetch_new_items(self, window: AlarmWindow) -> list[CvePayload]:
        """Fetch NEW then MODIFIED CVEs for the window."""
        if window.is_empty:
            return []

        start = format_nvd_timestamp(window.window_start_utc)
        end = format_nvd_timestamp(window.window_end_utc)

        published = await self._query(
            {"pubStartDate": start, "pubEndDate": end, **self._page_params()}
        )
        new_records = [r for r in published if r.published and window.contains(r.published)]

        modified = await self._query(
            {"lastModStartDate": start, "lastModEndDate": end, **self._page_params()}
        )
        new_ids = {r.cve_id for r in new_records}
        modified_records = [
            r
            for r in modified
            if r.last_modified
            and window.contains(r.last_modified)
            and r.cve_id not in new_ids
            and not (r.published and window.contains(r.published))
        ]

        payloads: list[CvePayload] = []
        for record in new_records:
            payloads.append(await self._build_new(record))
        for record in modified_records:
            payload = await self._build_modified(record)
            if payload is not None:
                payloads.append(payload)

        logger.info(
            "CVE window %s: %d new, %d modified candidates, %d payloads",
            window,
            len(new_records),
            len(modified_records),
            len(payloads),
        )
        return payloads

    @staticmethod
    def _page_params(start_index: int = 0) -> dict[str, str]:
        return {"startIndex": str(start_index), "resultsPerPage": str(RESULTS_PER_PAGE)}

    async def _query(self, params: dict[str, str]) -> list[CveRecord]:
        data = await self._get_json(self.options.remote_endpoint, params=params, headers=self._headers)
        return self._parse_vulnerabilities(data)

    @staticmethod
    def _parse_vulnerabilities(data: dict[str, Any]) -> list[CveRecord]:
        records: list[CveRecord] = []
        vulnerabilities = data.get("vulnerabilities") or []
        if not isinstance(vulnerabilities, list):
            return records
        for item in vulnerabilities:
            if not isinstance(item, dict):
                continue
            try:
                records.append(CveRecord.from_dict(item))
            except ValueError as e:
                logger.debug("Skipping malformed CVE entry: %s", e)
        return records

    async def _build_new(self, record: CveRecord, *, fallback_time: datetime | None = None) -> CvePayload:
        summary = await self.summarize(record)
        return CvePayload(
            summary_text=summary.summary,
            canonical_link=record.link,
            published_at=record.published or fallback_time or datetime.now(UTC),
            type=CveEventType.NEW,
            record=record,
            vector_summary=summary.vector_summary,
            reference_digest=summary.reference_digest,
        )

    async def _build_modified(self, record: CveRecord) -> CvePayload | None:
        try:
            change = await self.fetch_latest_change(record.cve_id)
        except FetchError as e:
            logger.warning("Dropping modified %s: history fetch failed: %s", record.cve_id, e)
            return None

        if change is None:
            logger.debug("No change history for %s", record.cve_id)
            return None

        details = filter_significant_details(change.details, self._policy)
        if not details:
            logger.debug("No significant change details for %s", record.cve_id)
            return None

        summary = await self.summarize(record)
        modified_summary = await self.summarize_change(record, change, details)
        return CvePayload(
            summary_text=summary.summary,
            canonical_link=record.link,
            published_at=record.last_modified or datetime.now(UTC),
            type=CveEventType.MODIFIED,
            record=record,
            vector_summary=summary.vector_summary,
            reference_digest=summary.reference_digest,
            modified_details=details,
            modified_summary=modified_summary,
            modified_at=change.created or record.last_modified,
        )

    async def fetch_latest_change(self, cve_id: str) -> CveChange | None:
        """Fetch the newest change-history event for a CVE.

        Raises:
            FetchError: If the history API call fails.
        """
        data = await self._get_json(self._history_url, params={"cveId": cve_id}, headers=self._headers)
        changes: list[CveChange] = []
        for entry in data.get("cveChanges") or []:
            if not isinstance(entry, dict):
                continue
            try:
                changes.append(CveChange.from_dict(entry))
            except ValueError:
                continue
        if not changes:
            return None
        epoch = datetime.min.replace(tzinfo=UTC)
        return max(changes, key=lambda c: c.created or epoch)

    async def summarize(self, record: CveRecord) -> CveSummary:
        """Korean summary of one CVE; never raises, falls back per field."""
        cvss = record.cvss.data if record.cvss else {}
        prompt = f"""
다음 CVE 정보로 한국어 요약 JSON을 생성해.

[1] CVE 핵심 정보
- cveId: {record.cve_id}
- published: {record.raw.get("published", "")}
- lastModified: {record.raw.get("lastModified", "")}
- status: {record.vuln_status}
- description_en: {record.description_en}

[2] CVSS
{json.dumps(cvss, ensure_ascii=False, indent=2)}

[3] Evidence (참고 링크)
{json.dumps(list(record.references), ensure_ascii=False, indent=2)}

출력(JSON만):
{{
  "summary": "2~3줄. 무엇/대상/영향/대응 힌트(있으면)",
  "vectorSummary": "1줄. 공격경로+권한/사용자개입+영향 순서",
  "referenceDigest": "1~2줄. 확인된 패치/권고/연구/릴리즈노트 핵심만"
}}

규칙:
- vectorSummary에서 NOT_DEFINED 언급 금지.
- referenceDigest: 패치 버전/완화책/권고가 명시된 경우에만 구체적으로,
  없으면 "해결/완화 정보는 참조 링크에서 확인 필요"처럼 보수적으로 작성.
- 추측 금지.
"""
        try:
            return CveSummary.from_response(await self._summarizer.summarize(prompt))
        except SummarizationError as e:
            logger.warning("CVE summary failed for %s: %s", record.cve_id, e)
            return CveSummary()

    async def summarize_change(
        self,
        record: CveRecord,
        change: CveChange,
        details: list[FilteredDetail],
    ) -> str:
        """Two to three line Korean summary of what this change event altered."""
        created = change.created.isoformat() if change.created else ""
        prompt = f"""
다음은 CVE 변경 이력에서 이번 이벤트로 실제로 변경된 내용만이다.

- 전체 CVE 설명을 다시 쓰지 마라.
- 과거 상태를 추정하지 마라.
- 이번 변경으로 무엇이 어떻게 달라졌는지만 요약하라.

아래 변경 내용을 한국어로 2~3줄로 요약하라.
가능하면 보안 영향(위험도 상승/하락, 대응 필요 여부)을 한 줄로 덧붙여라.

[변경 이벤트]
cveid: {record.cve_id}
eventName: {change.event_name}
created: {created}
변경 내용: {json.dumps([d.to_dict() for d in details], ensure_ascii=False, indent=2)}
"""
        content = await self._summarizer.summarize(prompt)
        if content and content.strip():
            return content.strip()
        return _fallback_change_summary(details)

    async def _weakness_field(self, record: CveRecord) -> str:
        cwe_id = record.primary_weakness
        if not cwe_id:
            return ""
        localized = await self._cwe.get_localized_weakness(cwe_id) if self._cwe else None
        if localized is None:
            return f" - {cwe_id}"
        return (
            f" - {cwe_id}\n"
            f" - 명칭: {localized.name_ko or localized.name_en}\n"
            f" - 설명: {localized.description_ko or localized.description_en}"
        )

    def _format_time(self, value: datetime) -> str:
        local = format_in_timezone(value, self.options.timezone)
        kst = format_kst(value)
        return kst if local == kst else f"{local} / {kst}"

    async def format(self, payload: CvePayload) -> DiscordOutbound | None:
        record = payload.record
        cvss = record.cvss
        score = f"{cvss.base_score} ({cvss.base_severity}, CVSS {cvss.version})" if cvss else "정보 없음"

        fields = [
            embed_field("제공자", record.provider_domain),
            embed_field("취약점", await self._weakness_field(record)),
            embed_field("CVSS", f" - 점수: {score}\n - 요약: {payload.vector_summary}", inline=True),
            embed_field("내용", payload.summary_text),
        ]
        if payload.type is CveEventType.MODIFIED:
            fields.append(embed_field("수정 내용", payload.modified_summary))
            modified_at = payload.modified_at or record.last_modified
            fields.append(embed_field("수정일", self._format_time(modified_at) if modified_at else None))
        fields.extend(
            [
                embed_field("발행일", self._format_time(record.published) if record.published else None),
                embed_field("참고 정보", payload.reference_digest),
                embed_field("URL", payload.canonical_link),
            ]
        )

        embed = build_embed(
            title=record.cve_id,
            url=payload.canonical_link,
            color=severity_to_color(cvss.base_severity if cvss else None),
            author="신규 NVD CVE" if payload.type is CveEventType.NEW else "변경 NVD CVE",
            fields=fields,
            footer="NVD CVE",
            timestamp=datetime.now(UTC),
        )
        return DiscordOutbound(
            embeds=(embed,),
            link_button=LinkButton(label="상세 보기", url=payload.canonical_link),
        )

    async def interpret_question(self, question: str, *, now: datetime | None = None) -> CveSearchSpec:
        """Turn a natural language question into a search spec.

        Falls back to a keyword search on the raw question when the
        summarizer returns nothing usable.
        """
        today = to_kst(now or datetime.now(UTC)).strftime("%Y-%m-%d")
        prompt = f"""
오늘 날짜(KST): {today}
질문: {question}

아래 형식의 JSON만 출력하라.
{{
  "keywords": ["..."],
  "severity": ["LOW" | "MEDIUM" | "HIGH" | "CRITICAL"],
  "dateRange": {{"start": "YYYY-MM-DD" | null, "end": "YYYY-MM-DD" | null}},
  "page": {{"pageNumber": 1, "pageSize": 20, "maxPages": 1}},
  "sort": {{"field": "published" | "lastModified" | "cvssScore", "direction": "asc" | "desc"}}
}}
"""
        try:
            return CveSearchSpec.from_dict(extract_json_object(await self._summarizer.interpret_search(prompt)))
        except SummarizationError as e:
            logger.info("Search question not interpreted (%s), using keyword search", e)
            return CveSearchSpec.from_question(question)

    async def search(
        self,
        question: str,
        *,
        limit: int = 5,
        now: datetime | None = None,
    ) -> list[CvePayload]:
        """Answer a natural language CVE search with up to ``limit`` payloads.

        Raises:
            FetchError: If the first NVD page cannot be fetched.
        """
        spec = await self.interpret_question(question, now=now)
        records = await self.search_records(spec)
        results: list[CvePayload] = []
        for record in records[:limit]:
            results.append(await self._build_new(record, fallback_time=now))
        return results

    async def search_records(self, spec: CveSearchSpec) -> list[CveRecord]:
        """Query NVD page by page and return sorted, severity-filtered records."""
        records: list[CveRecord] = []
        for i in range(spec.max_pages):
            start_index = (spec.page_number - 1 + i) * spec.page_size
            try:
                data = await self._get_json(
                    self.options.remote_endpoint,
                    params=spec.to_params(start_index),
                    headers=self._headers,
                )
            except FetchError:
                if not records:
                    raise
                logger.warning("Stopping CVE search after page %d", i)
                break
            page = self._parse_vulnerabilities(data)
            records.extend(page)
            if len(page) < spec.page_size:
                break
        return spec.sort([r for r in records if spec.matches_severity(r)])
