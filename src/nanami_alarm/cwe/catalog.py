"""CWE catalog loaded from the MITRE CWE XML export.

The catalog maps ``CWE-<n>`` ids to their English name and description.
``CweLocalizer`` adds Korean names/descriptions through the summarizer,
caching each successful translation per id.
"""

from __future__ import annotations

import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from nanami_alarm.errors import SummarizationError
from nanami_alarm.llm.summarizer import extract_json_object

if TYPE_CHECKING:
    from nanami_alarm.llm.summarizer import Summarizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CweInfo:
    """A weakness entry from the catalog."""

    id: str
    name: str
    description: str = ""
    status: str | None = None


@dataclass(frozen=True)
class LocalizedWeakness:
    """A weakness with Korean name and description."""

    id: str
    name_en: str
    name_ko: str
    description_en: str
    description_ko: str


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str) -> str:
    for child in element:
        if _local_name(child.tag) == name:
            return " ".join("".join(child.itertext()).split())
    return ""


def normalize_cwe_id(value: str) -> str:
    """Normalize ``79``, ``cwe-79`` or ``CWE-79`` to ``CWE-79``."""
    value = value.strip().upper()
    if value.isdigit():
        return f"CWE-{value}"
    return value


class CweCatalog:
    """In-memory lookup of CWE weaknesses."""

    def __init__(self, entries: dict[str, CweInfo] | None = None) -> None:
        self._entries = dict(entries or {})

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, cwe_id: str) -> CweInfo | None:
        return self._entries.get(normalize_cwe_id(cwe_id))

    @classmethod
    def from_xml_string(cls, xml: str | bytes) -> CweCatalog:
        """Parse a CWE catalog document (namespaced or not)."""
        root = ET.fromstring(xml)
        entries: dict[str, CweInfo] = {}
        for element in root.iter():
            if _local_name(element.tag) != "Weakness":
                continue
            number = element.get("ID")
            if not number:
                continue
            cwe_id = f"CWE-{number}"
            entries[cwe_id] = CweInfo(
                id=cwe_id,
                name=element.get("Name", ""),
                description=_child_text(element, "Description") or _child_text(element, "Summary"),
                status=element.get("Status"),
            )
        return cls(entries)

    @classmethod
    def from_xml_file(cls, path: str | Path) -> CweCatalog:
        catalog = cls.from_xml_string(Path(path).read_bytes())
        logger.info("Loaded %d CWE entries from %s", len(catalog), path)
        return catalog

    @classmethod
    async def load(cls, path: str | Path | None) -> CweCatalog:
        """Load the catalog off the event loop; a missing path yields an empty catalog."""
        if not path:
            logger.info("CWE_XML_PATH not set, weakness names will be omitted")
            return cls()
        try:
            return await asyncio.to_thread(cls.from_xml_file, path)
        except (OSError, ET.ParseError) as e:
            logger.warning("Failed to load CWE catalog from %s: %s", path, e)
            return cls()


class CweLocalizer:
    """Looks up a CWE id and translates it to Korean via the summarizer."""

    PROMPT_TEMPLATE = """
너는 보안 약점(CWE) 용어를 한국어로 자연스럽고 정확하게 번역하는 도우미다.
반드시 JSON만 출력한다. (코드블록/설명 금지)

입력:
- id: {cwe_id}
- name_en: {name}
- desc_en: {description}

출력 형식:
{{"nameKo": "...", "descriptionKo": "..."}}

규칙:
- nameKo: 보안/개발 문서에서 쓰는 자연스러운 번역(너무 길게 X)
- descriptionKo: 1~2문장, 핵심만. 과장/추측 금지.
- 입력 desc_en이 비어있으면 descriptionKo는 ""로.
"""

    def __init__(self, catalog: CweCatalog, summarizer: Summarizer) -> None:
        self._catalog = catalog
        self._summarizer = summarizer
        self._cache: dict[str, LocalizedWeakness] = {}

    async def get_localized_weakness(self, cwe_id: str | None) -> LocalizedWeakness | None:
        """Return the localized weakness, or None for unknown ids."""
        if not cwe_id:
            return None
        key = normalize_cwe_id(cwe_id)
        if key in self._cache:
            return self._cache[key]

        info = self._catalog.get(key)
        if info is None:
            return None

        name_ko, description_ko = info.name or key, ""
        translated = False
        prompt = self.PROMPT_TEMPLATE.format(
            cwe_id=key, name=info.name, description=info.description
        )
        try:
            data = extract_json_object(await self._summarizer.summarize(prompt))
            name_ko = str(data.get("nameKo") or name_ko)
            description_ko = str(data.get("descriptionKo") or "")
            translated = True
        except SummarizationError as e:
            logger.debug("CWE localization failed for %s: %s", key, e)

        localized = LocalizedWeakness(
            id=key,
            name_en=info.name,
            name_ko=name_ko,
            description_en=info.description,
            description_ko=description_ko,
        )
        if translated:
            self._cache[key] = localized
        return localized
