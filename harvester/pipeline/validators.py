"""
harvester.pipeline.validators

Structural validation with best-effort repair.

Two entry points:

- build_record(data): coerce a loosely typed candidate dict (as produced by
  a plugin's mapping step) into an EventRecord, repairing what it can
- validate_batch(records, rules): re-check a batch against a source's rules
  before change detection, repairing or dropping records

Repairs are recorded as warnings; anything unrecoverable is an error and
the record is dropped. In strict mode every repair counts as an error.
A single bad record never aborts the batch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError

from harvester.config.schema import ValidationRules
from harvester.schemas.event import EventRecord, EventStatus

logger = logging.getLogger(__name__)

_WS = re.compile(r"\s+")
_NUMBER = re.compile(r"-?\d+(?:[.,]\d+)?")
_CURRENCY_SYMBOLS = {"£": "GBP", "$": "USD", "€": "EUR"}

UNKNOWN_VENUE = "Unknown Venue"

# rule paths use the source document vocabulary
_RULE_PATHS = {
    "date.start": "date_start",
    "date.end": "date_end",
    "urls.event": "event_url",
    "urls.tickets": "tickets_url",
}


@dataclass(frozen=True)
class ValidationIssue:
    level: str  # "warning" or "error"
    code: str
    message: str
    field: str | None = None
    record_id: str | None = None


@dataclass
class ValidationResult:
    ok: bool
    issues: list[ValidationIssue] = field(default_factory=list)

    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.level == "warning"]

    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.level == "error"]


@dataclass
class BatchValidation:
    valid: list[EventRecord]
    dropped: int
    repaired: int
    issues: list[ValidationIssue] = field(default_factory=list)

    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.level == "error"]


# ---------------------------------------------------------------------
# Candidate dict -> EventRecord
# ---------------------------------------------------------------------

def _text(v: Any) -> str | None:
    if v is None:
        return None
    if isinstance(v, list):
        v = " ".join(str(x) for x in v if x is not None)
    s = _WS.sub(" ", str(v).strip())
    return s or None


def _number(v: Any) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    m = _NUMBER.search(str(v))
    if not m:
        return None
    return float(m.group(0).replace(",", "."))


def _string_list(v: Any) -> list[str]:
    if v is None:
        return []
    items = v if isinstance(v, (list, tuple)) else [v]
    out: list[str] = []
    for item in items:
        if not isinstance(item, (str, int, float)) or isinstance(item, bool):
            continue
        s = _text(item)
        if s and s not in out:
            out.append(s)
    return out


def parse_price(text: Any) -> tuple[float | None, float | None, str]:
    """
    '£10 - £15' -> (10.0, 15.0, 'GBP'); 'Free' -> (0.0, 0.0, 'GBP').
    """
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return float(text), float(text), "GBP"
    s = str(text or "")
    currency = next((code for sym, code in _CURRENCY_SYMBOLS.items() if sym in s), "GBP")
    nums = [float(n.replace(",", ".")) for n in _NUMBER.findall(s.replace("-", " "))]
    if not nums:
        if "free" in s.lower():
            return 0.0, 0.0, currency
        return None, None, currency
    return min(nums), max(nums), currency


def repair_payload(data: dict[str, Any]) -> tuple[dict[str, Any], list[ValidationIssue]]:
    """
    Return a repaired copy of ``data`` plus the repairs performed.

    Trims strings, coerces numeric price and coordinates, drops invalid
    list entries, defaults a missing venue name and coerces the status.
    """
    out = dict(data)
    issues: list[ValidationIssue] = []

    def note(code: str, message: str, fld: str) -> None:
        issues.append(ValidationIssue("warning", code, message, field=fld))

    for key in ("title", "description", "age_restriction", "timezone", "tickets_url", "event_url", "source_id"):
        if key in out:
            cleaned = _text(out[key])
            if cleaned != out[key]:
                note("trimmed", f"{key} whitespace normalized", key)
            out[key] = cleaned

    for key in ("artists", "genre", "images"):
        if key in out:
            cleaned_list = _string_list(out[key])
            if cleaned_list != out[key]:
                note("list_cleaned", f"{key} entries dropped or normalized", key)
            out[key] = cleaned_list

    venue = out.get("venue")
    if not isinstance(venue, dict):
        venue = {"name": _text(venue)} if venue else {}
    venue = dict(venue)
    for key in ("name", "address", "city", "country"):
        if key in venue:
            venue[key] = _text(venue[key])
    if not venue.get("name"):
        note("venue_defaulted", "venue.name missing; defaulted", "venue.name")
        venue["name"] = UNKNOWN_VENUE
    for key, limit in (("lat", 90), ("lng", 180)):
        if key in venue and venue[key] is not None:
            num = _number(venue[key])
            if num is None or not -limit <= num <= limit:
                note("coordinate_dropped", f"venue.{key} invalid", f"venue.{key}")
                num = None
            venue[key] = num
    out["venue"] = venue

    price = out.get("price")
    if price is not None:
        if isinstance(price, dict):
            lo, hi = _number(price.get("min")), _number(price.get("max"))
            currency = _text(price.get("currency")) or "GBP"
        else:
            lo, hi, currency = parse_price(price)
        if lo is None and hi is None:
            note("price_dropped", "price had no numeric value", "price")
            out["price"] = None
        else:
            if lo is not None and hi is not None and hi < lo:
                note("price_swapped", "price.max < price.min; swapped", "price")
                lo, hi = hi, lo
            out["price"] = {"min": lo, "max": hi, "currency": currency.upper()}

    status = out.get("status")
    if isinstance(status, EventStatus):
        status = out["status"] = status.value
    if status is not None and status not in {s.value for s in EventStatus}:
        lowered = str(status).strip().lower()
        coerced = next((s.value for s in EventStatus if s.value.startswith(lowered[:6])), EventStatus.SCHEDULED.value)
        note("status_coerced", f"status {status!r} -> {coerced}", "status")
        out["status"] = coerced

    return out, issues


def build_record(data: dict[str, Any]) -> tuple[EventRecord | None, ValidationResult]:
    """Repair and validate a candidate dict. Returns (None, result) when unrecoverable."""
    repaired, issues = repair_payload(data)
    try:
        record = EventRecord.model_validate(repaired)
    except ValidationError as e:
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            issues.append(ValidationIssue("error", "invalid", err.get("msg", "invalid"), field=loc or None))
        return None, ValidationResult(ok=False, issues=issues)
    return record, ValidationResult(ok=True, issues=issues)


# ---------------------------------------------------------------------
# Batch validation against source rules
# ---------------------------------------------------------------------

def _lookup(record: EventRecord, path: str) -> Any:
    path = _RULE_PATHS.get(path, path)
    cur: Any = record
    for part in path.split("."):
        cur = getattr(cur, part, None)
        if cur is None:
            return None
    return cur


def _looks_like_url(u: str) -> bool:
    p = urlparse(u)
    return p.scheme in ("http", "https") and bool(p.netloc)


def validate_record(
    record: EventRecord,
    rules: ValidationRules | None = None,
    *,
    strict: bool = False,
) -> tuple[EventRecord | None, ValidationResult]:
    """
    Check one record against the source rules, repairing where possible.

    Returns the (possibly repaired) record, or None when it must be dropped.
    """
    rules = rules or ValidationRules()
    issues: list[ValidationIssue] = []
    updates: dict[str, Any] = {}

    if record.date_end is not None and record.date_end < record.date_start:
        issues.append(ValidationIssue("warning", "end_before_start", "date_end before date_start; dropped", field="date_end", record_id=record.id))
        updates["date_end"] = None

    for key in ("tickets_url", "event_url"):
        url = getattr(record, key)
        if url and not _looks_like_url(url):
            issues.append(ValidationIssue("warning", "bad_url", f"{key} is not an absolute http(s) url; dropped", field=key, record_id=record.id))
            updates[key] = None

    images = [u for u in record.images if _looks_like_url(u)]
    if images != record.images:
        issues.append(ValidationIssue("warning", "bad_image", "non-url image entries dropped", field="images", record_id=record.id))
        updates["images"] = images

    # required fields are checked on the repaired record
    repaired = record.model_copy(update=updates) if updates else record
    for path in rules.required:
        value = _lookup(repaired, path)
        if value is None or (isinstance(value, str) and not value.strip()):
            issues.append(ValidationIssue("error", "missing_required", f"{path} is required", field=path, record_id=record.id))

    if strict:
        issues = [ValidationIssue("error", i.code, i.message, i.field, i.record_id) if i.level == "warning" else i for i in issues]

    if any(i.level == "error" for i in issues):
        return None, ValidationResult(ok=False, issues=issues)

    if updates:
        record = repaired.with_identity()
    return record, ValidationResult(ok=True, issues=issues)


def validate_batch(
    records: list[EventRecord],
    rules: ValidationRules | None = None,
    *,
    strict: bool = False,
) -> BatchValidation:
    rules = rules or ValidationRules()
    valid: list[EventRecord] = []
    all_issues: list[ValidationIssue] = []
    dropped = repaired = 0

    for record in records:
        fixed, result = validate_record(record, rules, strict=strict)
        all_issues.extend(result.issues)
        if fixed is None:
            dropped += 1
            logger.warning(
                "Dropping record %s: %s", record.id, "; ".join(i.message for i in result.errors())
            )
            continue
        if result.issues:
            repaired += 1
        valid.append(fixed)

    if rules.max_events_expected is not None and len(valid) > rules.max_events_expected:
        all_issues.append(
            ValidationIssue(
                "warning",
                "too_many_events",
                f"{len(valid)} events exceeds maxEventsExpected={rules.max_events_expected}",
            )
        )
    return BatchValidation(valid=valid, dropped=dropped, repaired=repaired, issues=all_issues)
