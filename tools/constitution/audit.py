"""
Audit log for constitutional violations.

Entries are immutable ``ViolationLogEntry`` records. The log keeps them in
memory and, when given a path, also appends them to a JSONL file where every
line carries the SHA-256 of the previous line, so deletion or editing of any
persisted entry is detectable offline with verify_chain().

Properties:
- Thread-safe: every mutation holds the store lock
- Listener failures are logged and never interrupt logging
- Snippets are PII-redacted and truncated before an entry is created
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .clauses import clause_for_violation, get_clause_by_id
from .models import (
    EnforcementMechanism,
    LogLevel,
    ResponseAction,
    ViolationContext,
    ViolationLogEntry,
    ViolationSource,
    ViolationType,
)

logger = logging.getLogger("constitution.audit")

MAX_SNIPPET_LENGTH = 200
TRUNCATION_MARKER = "...[truncated]"
REDACTED = "[REDACTED]"
_GENESIS_HASH = "0" * 64

REDACTION_PATTERNS = (
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),  # email
    re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b"),              # card
    re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),                        # phone
    re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"),                              # SSN
)


@dataclass(frozen=True)
class ConstitutionalViolationEvent:
    violation: ViolationLogEntry
    handled: bool = True
    event_type: str = "CONSTITUTIONAL_VIOLATION"


ViolationListener = Callable[[ConstitutionalViolationEvent], None]


# ---------------------------------------------------------------------------
# Entry construction
# ---------------------------------------------------------------------------

def sanitize_snippet(text: str) -> str:
    """Redact PII, then cut to MAX_SNIPPET_LENGTH."""
    sanitized = text
    for pattern in REDACTION_PATTERNS:
        sanitized = pattern.sub(REDACTED, sanitized)
    if len(sanitized) > MAX_SNIPPET_LENGTH:
        sanitized = sanitized[:MAX_SNIPPET_LENGTH] + TRUNCATION_MARKER
    return sanitized


def create_violation_entry(
    violation_type: ViolationType,
    source_type: ViolationSource,
    detection_method: EnforcementMechanism,
    *,
    source_id: Optional[str] = None,
    input_snippet: Optional[str] = None,
    request_id: str = "unknown",
    user_id: str = "unknown",
    clause_violated: Optional[str] = None,
) -> ViolationLogEntry:
    clause_id = clause_violated or clause_for_violation(violation_type)
    clause = get_clause_by_id(clause_id)
    action = clause.violation_response.action if clause else ResponseAction.GRACEFUL_DECLINE
    return ViolationLogEntry(
        request_id=request_id,
        user_id=user_id,
        clause_violated=clause_id,
        violation_type=violation_type,
        source_type=source_type,
        source_id=source_id,
        action=action,
        context=ViolationContext(
            input_snippet=sanitize_snippet(input_snippet) if input_snippet else None,
            detection_method=detection_method,
        ),
    )


def _log_level_for(entry: ViolationLogEntry) -> int:
    clause = get_clause_by_id(entry.clause_violated)
    level = clause.violation_response.log_level if clause else LogLevel.WARN
    if entry.action is ResponseAction.SILENT_INTERCEPT or level is LogLevel.CRITICAL:
        return logging.CRITICAL
    if level is LogLevel.INFO:
        return logging.INFO
    return logging.WARNING


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only violation store, optionally backed by a hash-chained JSONL file."""

    def __init__(self, log_path: Optional[Path] = None, *, retention_days: int = 90) -> None:
        self._path = log_path
        self._retention_days = retention_days
        self._lock = threading.Lock()
        self._entries: List[ViolationLogEntry] = []
        self._listeners: List[ViolationListener] = []
        self._seq = 0
        self._prev_hash = _GENESIS_HASH
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._bootstrap()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _bootstrap(self) -> None:
        assert self._path is not None
        if not self._path.exists():
            return
        for raw in self._path.read_text(encoding="utf-8").splitlines():
            raw = raw.strip()
            if not raw:
                continue
            try:
                record = json.loads(raw)
                entry = ViolationLogEntry.model_validate(record["entry"])
            except (json.JSONDecodeError, KeyError, ValidationError) as exc:
                logger.warning("audit bootstrap skipped unreadable line: %s", exc)
                continue
            self._entries.append(entry)
            self._seq = int(record.get("seq", self._seq + 1))
            self._prev_hash = record.get("entry_hash", self._prev_hash)

    @staticmethod
    def _compute_entry_hash(record: dict) -> str:
        sans_hash = {k: v for k, v in record.items() if k != "entry_hash"}
        canonical = json.dumps(sans_hash, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("ascii")).hexdigest()

    def _chain_record(self, entry: ViolationLogEntry) -> dict:
        self._seq += 1
        record = {"seq": self._seq, "entry": entry.to_wire(), "prev_hash": self._prev_hash}
        record["entry_hash"] = self._compute_entry_hash(record)
        self._prev_hash = record["entry_hash"]
        return record

    def _persist(self, entries: List[ViolationLogEntry]) -> None:
        if self._path is None or not entries:
            return
        seq, prev_hash = self._seq, self._prev_hash
        lines = [
            json.dumps(self._chain_record(entry), ensure_ascii=True, separators=(",", ":")) + "\n"
            for entry in entries
        ]
        try:
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write("".join(lines))
        except OSError:
            # Chain head stays on the last record that reached disk.
            self._seq, self._prev_hash = seq, prev_hash
            logger.exception(
                "audit write to %s failed; %d entry(s) kept in memory only", self._path, len(entries)
            )

    def _rewrite(self) -> None:
        """Re-chain the surviving entries from genesis."""
        if self._path is None:
            return
        self._seq = 0
        self._prev_hash = _GENESIS_HASH
        lines = [
            json.dumps(self._chain_record(entry), ensure_ascii=True, separators=(",", ":"))
            for entry in self._entries
        ]
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
        tmp.replace(self._path)

    def verify_chain(self) -> Tuple[bool, str]:
        """
        Verify the persisted chain from the first line.

        Returns:
            (True, "ok message")      if the chain is intact
            (False, "error message")  if tampering is detected
        """
        if self._path is None:
            return True, "In-memory log (nothing persisted)"
        if not self._path.exists():
            return True, "Empty log (genesis)"
        try:
            lines = [l for l in self._path.read_text(encoding="utf-8").splitlines() if l.strip()]
        except OSError as exc:
            return False, f"Cannot read log: {exc}"

        prev_hash = _GENESIS_HASH
        for i, raw in enumerate(lines, start=1):
            try:
                record = json.loads(raw)
            except json.JSONDecodeError:
                return False, f"Line {i}: invalid JSON (log corrupted)"
            if record.get("prev_hash", "") != prev_hash:
                return False, f"Line {i} (seq={record.get('seq')}): prev_hash mismatch"
            stored = record.get("entry_hash", "")
            if stored != self._compute_entry_hash(record):
                return False, f"Line {i} (seq={record.get('seq')}): entry_hash mismatch (entry modified)"
            prev_hash = stored
        return True, f"Chain intact ({len(lines)} entries)"

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def log_violation(self, entry: ViolationLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            self._persist([entry])
            listeners = list(self._listeners)

        event = ConstitutionalViolationEvent(violation=entry)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("audit listener failed")

        logger.log(
            _log_level_for(entry),
            "constitutional violation clause=%s type=%s source=%s method=%s request=%s",
            entry.clause_violated,
            entry.violation_type.value,
            entry.source_type.value,
            entry.context.detection_method.value,
            entry.request_id,
        )

    def log_error(self, error: BaseException, source_id: Optional[str] = None) -> None:
        """Record an internal error. Only the type and message reach the log."""
        logger.error(
            "constitutional error source=%s type=%s: %s",
            source_id or "-",
            type(error).__name__,
            error,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _filter(self, predicate: Callable[[ViolationLogEntry], bool]) -> List[ViolationLogEntry]:
        with self._lock:
            return [e for e in self._entries if predicate(e)]

    def get_violations_by_user(self, user_id: str) -> List[ViolationLogEntry]:
        return self._filter(lambda e: e.user_id == user_id)

    def get_violations_by_request(self, request_id: str) -> List[ViolationLogEntry]:
        return self._filter(lambda e: e.request_id == request_id)

    def get_violations_by_type(self, violation_type: ViolationType) -> List[ViolationLogEntry]:
        return self._filter(lambda e: e.violation_type is violation_type)

    def get_violations_by_clause(self, clause_id: str) -> List[ViolationLogEntry]:
        return self._filter(lambda e: e.clause_violated == clause_id)

    def get_violations_in_range(self, start: datetime, end: datetime) -> List[ViolationLogEntry]:
        start, end = _aware(start), _aware(end)
        return self._filter(lambda e: start <= e.timestamp <= end)

    def get_violation_counts(self) -> Dict[ViolationType, int]:
        counts: Dict[ViolationType, int] = {}
        with self._lock:
            for entry in self._entries:
                counts[entry.violation_type] = counts.get(entry.violation_type, 0) + 1
        return counts

    def get_all_violations(self) -> List[ViolationLogEntry]:
        with self._lock:
            return list(self._entries)

    def get_violation_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.get_violation_count()

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def on_violation(self, callback: ViolationListener) -> Callable[[], None]:
        """Subscribe; the returned callable unsubscribes."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune_old_violations(self, retention_days: Optional[int] = None) -> int:
        days = self._retention_days if retention_days is None else retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.timestamp >= cutoff]
            removed = before - len(self._entries)
            if removed:
                self._rewrite()
        if removed:
            logger.info("pruned %d violations older than %d days", removed, days)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._rewrite()

    def export_violations(self) -> str:
        with self._lock:
            return json.dumps([e.to_wire() for e in self._entries], indent=2)

    def import_violations(self, payload: str) -> int:
        """Append entries from a flat JSON array. Raises ValueError on malformed input."""
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid violation export: {exc}") from exc
        if not isinstance(raw, list):
            raise ValueError("Invalid violation export: expected a JSON array")
        try:
            imported = [ViolationLogEntry.model_validate(item) for item in raw]
        except ValidationError as exc:
            raise ValueError(f"Invalid violation entry: {exc.error_count()} error(s)") from exc
        with self._lock:
            self._entries.extend(imported)
            self._persist(imported)
        return len(imported)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
