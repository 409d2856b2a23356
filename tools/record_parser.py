"""
ProductSheetPro - Record Parser
Scans page text for repeating product entries (code, description, price, notes)
and turns them into RawExtractedRecord candidates.

The scan is a line-driven state machine. All layout rules (code grammar,
price grammar, adjacency window, confidence weights and thresholds) come from
a ParserProfile, see profiles.py.
"""

import logging
import re
from typing import Optional

from models import (
    ExtractionResult, PageLink, PageText, ParseAmbiguityWarning,
    ParserProfile, ParserState, RawExtractedRecord,
)
from tools.parse_tools import collapse_whitespace, normalize_code, normalize_price

logger = logging.getLogger(__name__)

# Separators vendors put between a code and the text that follows it
_FIELD_SEPARATORS = " -:|,;/\t"


def _cut_spans(text: str, spans: list[tuple[int, int]]) -> str:
    """text with each (start, end) span blanked out, whitespace collapsed."""
    for start, end in reversed(spans):
        text = text[:start] + " " + text[end:]
    return collapse_whitespace(text)


class _Block:
    """An open product entry being assembled."""

    def __init__(self, code: str, page_number: int, links: list[PageLink]):
        self.code = code
        self.page_number = page_number
        self.links = links
        self.description_parts: list[str] = []
        self.notes_parts: list[str] = []
        self.price: Optional[str] = None
        self.image_url: Optional[str] = None
        # Non-blank lines seen after the code line while no price is known
        self.lines_seen = 0
        self.window_closed = False


class RecordParser:
    """Extracts product records from page text using one ParserProfile.

    States:
        SEEKING_CODE: outside any entry. Only a code at the start of a line
            opens a block.
        ACCUMULATING_DESCRIPTION: text lines are appended to the description.
            A blank line or an image URL moves to SEEKING_PRICE.
        SEEKING_PRICE: the description paragraph has ended. A price line
            moves on to notes; another text line reopens the description.
        SEEKING_NOTES: the price is known. Everything up to the next code,
            stop line or end of document is notes.

    A block is scored when it closes: line_start + description + price
    weights. Below code_threshold the token is noise; from code_threshold it
    joins all_codes; from record_threshold it becomes a full record.

    The parser keeps no per-call state, so one instance may be shared
    between threads.
    """

    def __init__(self, profile: ParserProfile):
        self.profile = profile
        flags = re.IGNORECASE
        self._code_start_re = re.compile(
            rf"^(?P<code>{profile.code_pattern})(?=$|[\s:|,;])", flags
        )
        self._code_inline_re = re.compile(
            rf"(?<![\w-])(?:{profile.code_pattern})(?![\w-])", flags
        )
        self._price_re = re.compile(profile.price_pattern, flags)
        self._url_re = re.compile(profile.url_pattern, flags)
        self._stop_res = [re.compile(p, flags) for p in profile.stop_patterns]
        self._ignore_res = [re.compile(p, flags) for p in profile.ignore_patterns]

    def parse(self, pages: list[PageText]) -> ExtractionResult:
        run = _ParseRun(self)
        for page in pages:
            run.feed_page(page)
        return run.finish(pages)

    # ── Line classification ───────────────────────────────────────────

    def is_ignored(self, line: str) -> bool:
        return any(r.search(line) for r in self._ignore_res)

    def is_stop(self, line: str) -> bool:
        return any(r.search(line) for r in self._stop_res)

    def match_code_start(self, line: str) -> Optional[re.Match]:
        return self._code_start_re.match(line)

    def find_inline_codes(self, line: str) -> list[str]:
        return [normalize_code(m.group(0)) for m in self._code_inline_re.finditer(line)]

    def find_price(self, text: str) -> tuple[Optional[str], str, str, str]:
        """Find the first valid price token in text.

        Returns (price, before, after, leftover). Rejected tokens are removed
        from before. price is None when no token normalises; leftover is then
        the text with the rejected tokens removed.
        """
        rejected = []
        for m in self._price_re.finditer(text):
            token = m.group(0).rstrip(".,")
            price = normalize_price(token)
            if price is None:
                logger.debug("Rejected price token %r", m.group(0))
                rejected.append(m.span())
                continue
            before = _cut_spans(text[:m.start()], rejected).strip(_FIELD_SEPARATORS)
            after = text[m.start() + len(token):].strip(_FIELD_SEPARATORS + ".")
            return price, before, after, ""
        return None, "", "", _cut_spans(text, rejected)

    def find_url(self, text: str) -> Optional[str]:
        m = self._url_re.search(text)
        return m.group(0).rstrip(").,;") if m else None

    def is_image_url(self, url: str) -> bool:
        path = url.split("?", 1)[0].lower()
        return path.endswith(tuple(self.profile.image_extensions))

    def strip_notes_prefix(self, text: str) -> str:
        lowered = text.lower()
        for prefix in self.profile.notes_prefixes:
            if lowered.startswith(prefix):
                return text[len(prefix):].strip()
        return text

    def score(self, has_description: bool, has_price: bool) -> float:
        w = self.profile.weights
        total = w["line_start"]
        if has_description:
            total += w["description"]
        if has_price:
            total += w["price"]
        return round(min(total, 1.0), 4)


class _ParseRun:
    """Mutable state for one parse() call."""

    def __init__(self, rules: RecordParser):
        self.rules = rules
        self.profile = rules.profile
        self.state = ParserState.SEEKING_CODE
        self.block: Optional[_Block] = None
        self.records: dict[str, RawExtractedRecord] = {}
        self.codes: dict[str, None] = {}
        self.ambiguities: dict[str, ParseAmbiguityWarning] = {}

    def feed_page(self, page: PageText):
        for raw_line in page.text.split("\n"):
            self.feed_line(collapse_whitespace(raw_line), page)
        self.end_page(page)

    def feed_line(self, line: str, page: PageText):
        rules = self.rules

        if not line:
            if self.state == ParserState.ACCUMULATING_DESCRIPTION:
                self.state = ParserState.SEEKING_PRICE
            return
        if rules.is_ignored(line):
            return
        if rules.is_stop(line):
            self.finalize()
            return

        m = rules.match_code_start(line)
        if m:
            self.finalize()
            self.block = _Block(normalize_code(m.group("code")), page.page_number, page.links)
            self.state = ParserState.ACCUMULATING_DESCRIPTION
            rest = line[m.end():].strip(_FIELD_SEPARATORS)
            if rest:
                self.consume_text(rest)
            return

        if self.block is not None and self.block.price is None:
            self.block.lines_seen += 1
            if self.block.lines_seen > self.profile.field_window:
                self.block.window_closed = True
                self.finalize()

        self.note_inline_codes(line, page.page_number)
        if self.block is not None:
            self.consume_text(line)

    def consume_text(self, text: str):
        block = self.block
        rules = self.rules

        url = rules.find_url(text)
        if url:
            if block.image_url is None or (
                rules.is_image_url(url) and not rules.is_image_url(block.image_url)
            ):
                block.image_url = url
            text = collapse_whitespace(text.replace(url, " "))
            if self.state == ParserState.ACCUMULATING_DESCRIPTION and block.description_parts:
                self.state = ParserState.SEEKING_PRICE
            if not text:
                return

        if self.state == ParserState.SEEKING_NOTES:
            block.notes_parts.append(rules.strip_notes_prefix(text))
            return

        price, before, after, leftover = rules.find_price(text)
        if price is not None:
            if before:
                block.description_parts.append(before)
            block.price = price
            if after:
                block.notes_parts.append(rules.strip_notes_prefix(after))
            self.state = ParserState.SEEKING_NOTES
            return

        if not leftover:
            return
        stripped = rules.strip_notes_prefix(leftover)
        if stripped != leftover:
            block.notes_parts.append(stripped)
            return
        block.description_parts.append(leftover)
        self.state = ParserState.ACCUMULATING_DESCRIPTION

    def note_inline_codes(self, line: str, page_number: int):
        weight = self.profile.inline_code_weight
        for code in self.rules.find_inline_codes(line):
            if weight < self.profile.code_threshold:
                logger.debug(
                    "Ignored inline code-like token %s on page %d", code, page_number
                )
                continue
            self.codes.setdefault(code)
            if code not in self.records and code not in self.ambiguities:
                self.ambiguities[code] = ParseAmbiguityWarning(
                    code=code,
                    page_number=page_number,
                    score=weight,
                    reason="code-like token outside a product entry",
                )

    def end_page(self, page: PageText):
        if self.block is None:
            return
        if (self.state == ParserState.ACCUMULATING_DESCRIPTION
                and self.profile.carry_description_across_pages):
            logger.debug(
                "Carrying open description for %s past page %d",
                self.block.code, page.page_number,
            )
            return
        self.finalize()

    def finalize(self):
        block = self.block
        self.block = None
        self.state = ParserState.SEEKING_CODE
        if block is None:
            return

        description = collapse_whitespace(" ".join(block.description_parts))
        has_price = block.price is not None
        score = self.rules.score(bool(description), has_price)

        if score < self.profile.code_threshold:
            logger.debug(
                "Dropped code-like token %s on page %d (score %.2f)",
                block.code, block.page_number, score,
            )
            return

        self.codes.setdefault(block.code)

        if score >= self.profile.record_threshold:
            image_url = block.image_url or self._link_for(block)
            notes = collapse_whitespace(" ".join(block.notes_parts))
            # Last occurrence wins; dict keeps the first position
            self.records[block.code] = RawExtractedRecord(
                code=block.code,
                manufacturer_description=description,
                price=block.price,
                image_url=image_url,
                notes=notes or None,
                page_number=block.page_number,
                confidence=score,
            )
            self.ambiguities.pop(block.code, None)
            return

        if block.code in self.records:
            return
        if not has_price:
            reason = (
                f"no price within {self.profile.field_window} lines"
                if block.window_closed else "no price found"
            )
        else:
            reason = "no description found"
        self.ambiguities[block.code] = ParseAmbiguityWarning(
            code=block.code,
            page_number=block.page_number,
            score=score,
            reason=reason,
        )

    @staticmethod
    def _link_for(block: _Block) -> Optional[str]:
        for link in block.links:
            if block.code in link.anchor_text.upper():
                return link.uri
        return None

    def finish(self, pages: list[PageText]) -> ExtractionResult:
        self.finalize()
        order = {code: i for i, code in enumerate(self.codes)}
        records = sorted(self.records.values(), key=lambda r: order[r.code])
        ambiguities = sorted(
            (a for code, a in self.ambiguities.items() if code not in self.records),
            key=lambda a: order[a.code],
        )
        for a in ambiguities:
            logger.info(
                "Code %s on page %d not promoted to a record: %s",
                a.code, a.page_number, a.reason,
            )
        return ExtractionResult(
            page_count=len(pages) if any(p.has_text for p in pages) else 0,
            records=records,
            all_codes=list(self.codes),
            ambiguities=ambiguities,
            profile_name=self.profile.name,
        )


def parse_pages(pages: list[PageText], profile: ParserProfile) -> ExtractionResult:
    """Parse extracted pages with the given vendor profile."""
    return RecordParser(profile).parse(pages)
