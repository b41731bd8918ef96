"""
Configuration Loader (``workflow_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into typed objects: ``EngineSettings``
from a settings file, and ``ApprovalRule`` tuples from a rule catalog
file.  Runtime callers go through ``workflow_config.get_engine_settings()``
and ``workflow_config.load_rule_catalog()``.

Architecture position
---------------------
**Config layer**.  Depends on ``workflow_kernel.domain`` for the rule
type; no dependency on services.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields (``rule_id``, ``code``,
  ``document_type``).
* Amounts are parsed through ``str`` into ``Decimal``; floats never reach
  a rule.
* ``compute_checksum`` is deterministic for identical content.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from workflow_config.schema import EngineSettings
from workflow_kernel.domain.approval import ApprovalRule, ApprovalType, RejectionPolicy

_SETTINGS_FIELDS = frozenset(EngineSettings.__dataclass_fields__)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_date(value: Any) -> date:
    """Parse a date from YAML (string or date object)."""
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value)
    raise ValueError(f"Cannot parse date from {value!r}")


def parse_decimal(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field}: cannot parse amount from {value!r}") from None


def _optional_decimal(data: dict[str, Any], field: str) -> Decimal | None:
    value = data.get(field)
    if value is None:
        return None
    return parse_decimal(value, field)


def _optional_str(data: dict[str, Any], field: str) -> str | None:
    value = data.get(field)
    return None if value is None else str(value)


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """
    Parse ``EngineSettings`` from the ``engine:`` section of a settings file.

    Unknown keys are rejected so typos do not silently fall back to defaults.
    """
    unknown = set(data) - _SETTINGS_FIELDS
    if unknown:
        raise ValueError(f"Unknown engine settings: {sorted(unknown)}")

    values = dict(data)
    if "rejection_policy" in values:
        try:
            values["rejection_policy"] = RejectionPolicy(values["rejection_policy"])
        except ValueError:
            raise ValueError(
                f"rejection_policy must be one of "
                f"{[p.value for p in RejectionPolicy]}, "
                f"got {data['rejection_policy']!r}"
            ) from None
    if "log_level" in values:
        values["log_level"] = str(values["log_level"]).upper()
    return EngineSettings(**values)


def load_settings(path: Path) -> EngineSettings:
    data = load_yaml_file(path)
    return parse_settings(data.get("engine") or {})


def parse_rule(data: dict[str, Any]) -> ApprovalRule:
    """
    Parse an ``ApprovalRule`` from one entry of a catalog's ``rules:`` list.

    Raises:
        KeyError: if ``rule_id``, ``code`` or ``document_type`` is missing.
        ValueError: on an unknown approval type or inconsistent limits/counts.
    """
    rule_id = str(data["rule_id"])
    try:
        approval_type = ApprovalType(data.get("approval_type", "single"))
    except ValueError:
        raise ValueError(
            f"Rule {rule_id}: unknown approval_type {data.get('approval_type')!r}"
        ) from None

    eligible_actor_ids = frozenset(str(a) for a in data.get("eligible_actor_ids") or ())
    required_approvers = int(data.get("required_approvers", 1))
    eligible_approvers = int(
        data.get("eligible_approvers", len(eligible_actor_ids) or required_approvers)
    )

    rule = ApprovalRule(
        rule_id=rule_id,
        code=str(data["code"]),
        document_type=str(data["document_type"]),
        approval_type=approval_type,
        floor_limit=parse_decimal(data.get("floor_limit", 0), "floor_limit"),
        ceiling_limit=_optional_decimal(data, "ceiling_limit"),
        budget_ceiling_limit=_optional_decimal(data, "budget_ceiling_limit"),
        non_budget_ceiling_limit=_optional_decimal(data, "non_budget_ceiling_limit"),
        required_approvers=required_approvers,
        eligible_approvers=eligible_approvers,
        approver_id=_optional_str(data, "approver_id"),
        approver_name=_optional_str(data, "approver_name"),
        eligible_actor_ids=eligible_actor_ids,
        timeout_days=(
            int(data["timeout_days"]) if data.get("timeout_days") is not None else None
        ),
        escalation_enabled=bool(data.get("escalation_enabled", False)),
        escalation_rule_id=_optional_str(data, "escalation_rule_id"),
        auto_reject_on_timeout=bool(data.get("auto_reject_on_timeout", False)),
        site_id=_optional_str(data, "site_id"),
        is_active=bool(data.get("is_active", True)),
        effective_from=(
            parse_date(data["effective_from"]) if data.get("effective_from") else None
        ),
        effective_to=(
            parse_date(data["effective_to"]) if data.get("effective_to") else None
        ),
        budget_type=str(data.get("budget_type", "All")),
        transaction_category=_optional_str(data, "transaction_category"),
        urgency=_optional_str(data, "urgency"),
        created_by=_optional_str(data, "created_by"),
    )
    validate_rule(rule)
    return rule


def validate_rule(rule: ApprovalRule) -> None:
    """Structural checks on a single rule.  Raises ValueError."""
    if rule.floor_limit < 0:
        raise ValueError(f"Rule {rule.rule_id}: floor_limit must be >= 0")
    for name in ("ceiling_limit", "budget_ceiling_limit", "non_budget_ceiling_limit"):
        ceiling = getattr(rule, name)
        if ceiling is not None and ceiling <= rule.floor_limit:
            raise ValueError(
                f"Rule {rule.rule_id}: {name} ({ceiling}) must exceed "
                f"floor_limit ({rule.floor_limit})"
            )
    if rule.required_approvers < 1:
        raise ValueError(f"Rule {rule.rule_id}: required_approvers must be >= 1")
    if rule.pool_size < 1:
        raise ValueError(f"Rule {rule.rule_id}: eligible pool must not be empty")
    if (
        rule.approval_type == ApprovalType.QUORUM
        and rule.required_approvers > rule.pool_size
    ):
        raise ValueError(
            f"Rule {rule.rule_id}: quorum of {rule.required_approvers} "
            f"exceeds pool of {rule.pool_size}"
        )
    if rule.timeout_days is not None and rule.timeout_days < 0:
        raise ValueError(f"Rule {rule.rule_id}: timeout_days must be >= 0")
    if rule.escalation_enabled and not rule.escalation_rule_id:
        raise ValueError(
            f"Rule {rule.rule_id}: escalation_enabled requires escalation_rule_id"
        )
    if (
        rule.effective_from is not None
        and rule.effective_to is not None
        and rule.effective_to < rule.effective_from
    ):
        raise ValueError(f"Rule {rule.rule_id}: effective_to precedes effective_from")


def parse_rules(data: dict[str, Any]) -> tuple[ApprovalRule, ...]:
    """Parse the ``rules:`` list of a catalog file; rule ids must be unique."""
    rules = tuple(parse_rule(entry) for entry in data.get("rules") or ())
    seen: set[str] = set()
    for rule in rules:
        if rule.rule_id in seen:
            raise ValueError(f"Duplicate rule_id in catalog: {rule.rule_id}")
        seen.add(rule.rule_id)
    return rules


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
