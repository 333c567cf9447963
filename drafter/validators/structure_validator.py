from __future__ import annotations

import re
from collections import Counter, defaultdict
from typing import Dict, List, Set

from drafter_shared.style import CLOSING_HEADING_KEYWORDS

_H2 = re.compile(r"^##\s+(.+)$", re.MULTILINE)
_H3 = re.compile(r"^###\s+(.+)$")
_RESIDUAL_PLACEHOLDERS = [
    re.compile(r"(?:サービス|ツール|会社|企業|製品)[A-ZＡ-Ｚ](?![A-Za-z])"),
    re.compile(r"\b(?:Service|Tool|Company|Product) [A-Z]\b"),
    re.compile(r"[○〇◯]{2,}"),
    re.compile(r"\bX{3,}\b"),
]
# Sentence endings that drift into plain form inside polite copy.
_PLAIN_FORM_ENDINGS = [
    r"[^。！？\s]{2,}である。",
    r"[^。！？\s]{2,}にある。",
    r"[^。！？\s]{2,}だろう。",
]


class StructureValidator:
    """Non-blocking checks on an assembled article; every method returns warnings."""

    @staticmethod
    def validate_headings(markdown: str) -> List[str]:
        """Duplicate H2s and H3s reused under several H2s."""
        if not markdown:
            return []

        warnings: List[str] = []
        h2_headings = [heading.strip() for heading in _H2.findall(markdown) if heading.strip()]
        for heading, count in Counter(h2_headings).items():
            if count > 1:
                warnings.append(f"H2が重複しています: 「{heading}」が{count}回出現")

        current_h2 = None
        parents: Dict[str, Set[str]] = defaultdict(set)
        for line in markdown.splitlines():
            line = line.rstrip()
            h2_match = _H2.match(line)
            if h2_match:
                current_h2 = h2_match.group(1).strip()
                continue
            h3_match = _H3.match(line)
            if h3_match and h3_match.group(1).strip():
                parents[h3_match.group(1).strip()].add(current_h2 or "__root__")

        for heading, owners in parents.items():
            if len(owners) > 1:
                warnings.append(f"H3「{heading}」が{len(owners)}個のH2配下で使われています")
        return warnings

    @staticmethod
    def check_placeholder_residue(markdown: str) -> List[str]:
        if not markdown:
            return []
        warnings: List[str] = []
        for pattern in _RESIDUAL_PLACEHOLDERS:
            matches = pattern.findall(markdown)
            if matches:
                warnings.append(f"プレースホルダーが残っています: {', '.join(sorted(set(matches))[:3])}")
        return warnings

    @staticmethod
    def has_closing_section(markdown: str) -> bool:
        headings = [heading.strip().lower() for heading in _H2.findall(markdown or "")]
        return any(keyword in heading for heading in headings for keyword in CLOSING_HEADING_KEYWORDS)

    @staticmethod
    def check_style_consistency(markdown: str, tone: str = "丁寧") -> List[str]:
        """Flag plain-form endings when the requested tone is polite."""
        if not markdown or "丁寧" not in (tone or ""):
            return []
        warnings: List[str] = []
        for pattern in _PLAIN_FORM_ENDINGS:
            matches = re.findall(pattern, markdown)
            if matches:
                warnings.append(f"「である調」が検出されました: {', '.join(matches[:3])}")
        return warnings

    @classmethod
    def validate(cls, markdown: str, *, tone: str = "丁寧") -> List[str]:
        warnings = cls.validate_headings(markdown) + cls.check_placeholder_residue(markdown)
        if not cls.has_closing_section(markdown):
            warnings.append("まとめセクションがありません")
        return warnings + cls.check_style_consistency(markdown, tone)
