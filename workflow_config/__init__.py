"""
workflow_config -- public entrypoint for engine configuration.

Responsibility:
    ``get_engine_settings()`` is the only way services obtain runtime
    settings; ``load_rule_catalog()`` turns a catalog YAML into a
    ``RuleCatalog`` (an in-memory ``RuleProvider``).

Architecture position:
    Configuration -- sits above ``workflow_kernel`` / ``workflow_engines``
    and below ``workflow_services``.  The kernel MUST NEVER import from
    ``workflow_config``.

Failure modes:
    - ``FileNotFoundError`` -- settings or catalog file missing.
    - ``ValueError`` / ``KeyError`` -- schema or structural validation
      failures (unknown settings, bad rule fields, dangling escalation
      targets when ``strict`` is set).
    - ``yaml.YAMLError`` -- malformed YAML.
"""

from __future__ import annotations

import logging
from pathlib import Path

from workflow_config.catalog import RuleCatalog
from workflow_config.loader import (
    compute_checksum,
    load_settings,
    load_yaml_file,
    parse_rules,
)
from workflow_config.schema import EngineSettings

_logger = logging.getLogger("workflow_kernel.config")

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "defaults.yaml"
CATALOG_DIR = Path(__file__).parent / "catalogs"


def get_engine_settings(path: Path | str | None = None) -> EngineSettings:
    """Load and validate engine settings.

    Args:
        path: Settings YAML; the packaged ``defaults.yaml`` when omitted.
    """
    settings_path = Path(path) if path is not None else DEFAULT_SETTINGS_PATH
    settings = load_settings(settings_path)
    _logger.info(
        "WORKFLOW_CONFIG_TRACE",
        extra={
            "trace_type": "WORKFLOW_CONFIG_TRACE",
            "source": str(settings_path),
            "rejection_policy": settings.rejection_policy.value,
            "default_timeout_days": settings.default_timeout_days,
        },
    )
    return settings


def load_rule_catalog(path: Path | str, *, strict: bool = True) -> RuleCatalog:
    """Parse a rule catalog YAML into a ``RuleCatalog``.

    With ``strict`` (the default) every enabled escalation must point at a
    rule in the same catalog.  Hosts that resolve escalation targets from
    another source pass ``strict=False``.
    """
    catalog_path = Path(path)
    data = load_yaml_file(catalog_path)
    catalog = RuleCatalog(parse_rules(data), checksum=compute_checksum(data))

    if strict:
        missing = catalog.missing_escalation_targets()
        if missing:
            raise ValueError(
                "Escalation targets not found in catalog: "
                + ", ".join(f"{rule_id} -> {target}" for rule_id, target in missing)
            )

    _logger.info(
        "WORKFLOW_CONFIG_TRACE",
        extra={
            "trace_type": "WORKFLOW_CONFIG_TRACE",
            "source": str(catalog_path),
            "rule_count": len(catalog),
            "checksum": catalog.checksum,
        },
    )
    return catalog


__all__ = [
    "CATALOG_DIR",
    "DEFAULT_SETTINGS_PATH",
    "EngineSettings",
    "RuleCatalog",
    "get_engine_settings",
    "load_rule_catalog",
]
