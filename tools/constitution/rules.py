"""
Secondary ruleset: the amendable policy layer below the constitution.

Every add/update/delete appends a VersionControlledResolution to the change
log and bumps the patch version, so any rule's value at a past instant can
be rebuilt by replaying the log.
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .models import RuleCategory, SecondaryRule, VersionControlledResolution, utc_now

logger = logging.getLogger("constitution.rules")

INITIAL_VERSION = "1.0.0"
DELETED_MARKER = "[DELETED]"

DEFAULT_RULES = (
    (RuleCategory.PLUGIN_BOUNDARY, "Plugins cannot access PKV write operations"),
    (RuleCategory.PLUGIN_BOUNDARY, "Plugins must declare all capabilities at registration"),
    (RuleCategory.PLUGIN_BOUNDARY, "Plugin execution timeout is 30 seconds"),
    (RuleCategory.DATA_ACCESS, "Cross-user data access is prohibited"),
    (RuleCategory.DATA_ACCESS, "External network calls must use declared domains only"),
    (RuleCategory.HONESTY_TIER, "BASE tier applies mild truth-telling always"),
    (RuleCategory.HONESTY_TIER, "PLUGIN tier allows honesty style customization above baseline"),
    (
        RuleCategory.HONESTY_TIER,
        "SUPREME_COURT tier removes politeness filters but maintains baseline honesty",
    ),
)


class SecondaryRulesetSnapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: str = Field(min_length=1)
    last_modified: datetime = Field(default_factory=utc_now)
    rules: List[SecondaryRule] = Field(default_factory=list)
    change_log: List[VersionControlledResolution] = Field(default_factory=list)


@dataclass(frozen=True)
class RulesetModifiedEvent:
    resolution: VersionControlledResolution
    event_type: str = "RULESET_MODIFIED"


RulesetListener = Callable[[RulesetModifiedEvent], None]


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def increment_version(version: str) -> str:
    parts = (version.split(".") + ["0", "0", "0"])[:3]
    try:
        major, minor, patch = (int(p) for p in parts)
    except ValueError:
        return INITIAL_VERSION
    return f"{major}.{minor}.{patch + 1}"


class SecondaryRuleset:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[RulesetListener] = []
        self._state = SecondaryRulesetSnapshot(version=INITIAL_VERSION)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def version(self) -> str:
        return self._state.version

    def get_ruleset(self) -> SecondaryRulesetSnapshot:
        with self._lock:
            return self._state.model_copy(deep=True)

    def get_rule(self, rule_id: str) -> Optional[SecondaryRule]:
        with self._lock:
            return self._find(rule_id)

    def get_rules_by_category(self, category: RuleCategory) -> List[SecondaryRule]:
        with self._lock:
            return [r for r in self._state.rules if r.category is category]

    def get_rule_history(self, rule_id: str) -> List[VersionControlledResolution]:
        with self._lock:
            return [r for r in self._state.change_log if r.rule_id == rule_id]

    def get_change_log(self) -> List[VersionControlledResolution]:
        with self._lock:
            return list(self._state.change_log)

    def get_rule_at_time(self, rule_id: str, at: datetime) -> Optional[str]:
        """Replay the log up to ``at``. None if the rule did not exist or was deleted."""
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        value: Optional[str] = None
        with self._lock:
            for resolution in self._state.change_log:
                if resolution.rule_id != rule_id or resolution.timestamp > at:
                    continue
                value = None if resolution.new_value == DELETED_MARKER else resolution.new_value
        return value

    def _find(self, rule_id: str) -> Optional[SecondaryRule]:
        for rule in self._state.rules:
            if rule.id == rule_id:
                return rule
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _record(self, rule_id: str, previous: str, new: str, reason: str, approved_by: str, ts: datetime):
        resolution = VersionControlledResolution(
            resolution_id=_new_id("res"),
            rule_id=rule_id,
            previous_value=previous,
            new_value=new,
            reason=reason,
            timestamp=ts,
            approved_by=approved_by,
        )
        self._state.change_log.append(resolution)
        self._state.last_modified = ts
        self._state.version = increment_version(self._state.version)
        return resolution

    def add_rule(self, category: RuleCategory, rule: str, approved_by: str) -> SecondaryRule:
        ts = utc_now()
        new_rule = SecondaryRule(
            id=_new_id("rule"), category=category, rule=rule, created_at=ts, modified_at=ts
        )
        with self._lock:
            self._state.rules.append(new_rule)
            resolution = self._record(new_rule.id, "", rule, "Initial creation", approved_by, ts)
        self._emit(resolution)
        return new_rule

    def update_rule(
        self, rule_id: str, new_value: str, reason: str, approved_by: str
    ) -> Optional[SecondaryRule]:
        ts = utc_now()
        with self._lock:
            current = self._find(rule_id)
            if current is None:
                return None
            updated = current.model_copy(update={"rule": new_value, "modified_at": ts})
            self._state.rules[self._state.rules.index(current)] = updated
            resolution = self._record(rule_id, current.rule, new_value, reason, approved_by, ts)
        self._emit(resolution)
        return updated

    def delete_rule(self, rule_id: str, reason: str, approved_by: str) -> bool:
        ts = utc_now()
        with self._lock:
            current = self._find(rule_id)
            if current is None:
                return False
            self._state.rules.remove(current)
            resolution = self._record(rule_id, current.rule, DELETED_MARKER, reason, approved_by, ts)
        self._emit(resolution)
        return True

    def rollback_rule(
        self, rule_id: str, target_resolution_id: str, reason: str, approved_by: str
    ) -> Optional[SecondaryRule]:
        """Restore the value a past resolution set. Deleted states cannot be restored."""
        with self._lock:
            target = next(
                (
                    r
                    for r in self._state.change_log
                    if r.resolution_id == target_resolution_id and r.rule_id == rule_id
                ),
                None,
            )
        if target is None or target.new_value == DELETED_MARKER:
            return None
        return self.update_rule(
            rule_id,
            target.new_value,
            f"Rollback to {target_resolution_id}: {reason}",
            approved_by,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_ruleset_modified(self, callback: RulesetListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, resolution: VersionControlledResolution) -> None:
        with self._lock:
            listeners = list(self._listeners)
        event = RulesetModifiedEvent(resolution=resolution)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("ruleset listener failed")
        logger.info(
            "secondary rule %s changed by %s: %s",
            resolution.rule_id,
            resolution.approved_by,
            resolution.reason,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_ruleset(self) -> str:
        with self._lock:
            return self._state.model_dump_json(by_alias=True, indent=2)

    def import_ruleset(self, payload: str) -> None:
        try:
            raw = json.loads(payload)
            if not isinstance(raw, dict) or not raw.get("version") or not isinstance(raw.get("rules"), list):
                raise ValueError("Invalid ruleset format")
            snapshot = SecondaryRulesetSnapshot.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ValueError("Invalid ruleset format") from exc
        with self._lock:
            self._state = snapshot

    def reset(self) -> None:
        with self._lock:
            self._state = SecondaryRulesetSnapshot(version=INITIAL_VERSION)

    def initialize_default_rules(self, approved_by: str = "SYSTEM") -> None:
        with self._lock:
            if self._state.rules:
                return
        for category, text in DEFAULT_RULES:
            self.add_rule(category, text, approved_by)
