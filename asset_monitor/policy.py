"""Adapter around the Open Policy Agent command line evaluator.

The rule folder holds rego modules and constraint definitions. For each
evaluation the asset array is written to ``<writable>/assets/assets.json`` so
the engine sees it as ``data.assets``; the audit query then returns one entry
per (asset, constraint) violation::

    {"result": [{"expressions": [{"value": [
        {"violation": {"msg": "...", "details": {...}},
         "constraint_config": {"apiVersion": "...", "kind": "...",
                               "metadata": {...}, "spec": {...}}}
    ]}]}]}
"""
from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

from .errors import EvaluationError, ResultSchemaError, RuleConfigurationError, SerializationError
from .logs import fields
from .model import Asset

logger = logging.getLogger(__name__)

ASSETS_FOLDER_NAME = "assets"
ASSETS_FILE_NAME = "assets.json"

# opa reports these on stderr when the rule set itself is broken
_CONFIGURATION_MARKERS = ("rego_parse_error", "rego_compile_error", "rego_type_error", "no such file")


@dataclass
class RawMatch:
    """One entry of the audit result set, validated but not yet projected."""

    violation: Dict[str, Any]
    constraint_config: Dict[str, Any]

    @property
    def message(self) -> str:
        msg = self.violation.get("msg", "")
        return msg if isinstance(msg, str) else str(msg)

    @property
    def details(self) -> Dict[str, Any]:
        details = self.violation.get("details")
        return details if isinstance(details, dict) else {}


def decode_result_set(document: Any) -> List[RawMatch]:
    """Decode ``opa eval --format json`` output into :class:`RawMatch` items.

    An empty result (undefined query) means no violation. Anything that is
    present but mistyped raises :class:`ResultSchemaError`.
    """

    if not isinstance(document, Mapping):
        raise ResultSchemaError("result set is not an object")
    results = document.get("result")
    if not results:
        return []
    if not isinstance(results, list) or not isinstance(results[0], Mapping):
        raise ResultSchemaError("result must be a list of objects")
    expressions = results[0].get("expressions")
    if not expressions:
        return []
    if not isinstance(expressions, list) or not isinstance(expressions[0], Mapping):
        raise ResultSchemaError("expressions must be a list of objects")
    if "value" not in expressions[0]:
        raise ResultSchemaError("expression has no value")
    values = expressions[0]["value"]
    if values is None:
        return []
    if not isinstance(values, list):
        raise ResultSchemaError(f"expression value must be a list, got {type(values).__name__}")

    matches: List[RawMatch] = []
    for index, value in enumerate(values):
        if not isinstance(value, Mapping):
            raise ResultSchemaError(f"match {index} is not an object")
        violation = value.get("violation")
        if violation is None:
            raise ResultSchemaError(f"match {index} has no violation field")
        if not isinstance(violation, dict):
            raise ResultSchemaError(f"match {index} violation is not an object")
        constraint_config = value.get("constraint_config")
        if constraint_config is None:
            raise ResultSchemaError(f"match {index} has no constraint_config field")
        if not isinstance(constraint_config, dict):
            raise ResultSchemaError(f"match {index} constraint_config is not an object")
        matches.append(RawMatch(violation=violation, constraint_config=constraint_config))
    return matches


@dataclass
class PolicyEvaluator:
    """Evaluate assets against the rules found under ``opa_folder``."""

    opa_folder: str
    writable_folder: str
    rego_modules_folder: str
    query: str = "data.validator.gcp.lib.audit"
    opa_binary: str = "opa"
    timeout: float = 60.0
    runner: Callable[..., subprocess.CompletedProcess] = field(default=subprocess.run, repr=False)

    @property
    def assets_file_path(self) -> Path:
        return Path(self.writable_folder) / ASSETS_FOLDER_NAME / ASSETS_FILE_NAME

    def rule_sources(self) -> Dict[str, str]:
        """Return the verbatim rego modules keyed by file name."""

        folder = Path(self.rego_modules_folder)
        try:
            entries = sorted(p for p in folder.iterdir() if p.is_file())
        except OSError as exc:
            raise RuleConfigurationError(f"cannot list rego modules in {folder}: {exc}") from exc
        sources: Dict[str, str] = {}
        for entry in entries:
            try:
                sources[entry.name] = entry.read_text(encoding="utf-8")
            except OSError as exc:
                raise RuleConfigurationError(f"cannot read rego module {entry}: {exc}") from exc
        return sources

    def evaluate(self, assets: Sequence[Asset]) -> List[RawMatch]:
        """Run the audit query over *assets* and return the decoded matches."""

        if not Path(self.opa_folder).is_dir():
            raise RuleConfigurationError(f"rule folder {self.opa_folder} does not exist")
        try:
            document = json.dumps([asset.to_dict() for asset in assets])
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"cannot serialize assets: {exc}") from exc
        self._write_assets(document)

        cmd = [
            self.opa_binary,
            "eval",
            "--format",
            "json",
            "-d",
            self.opa_folder,
            "-d",
            self.writable_folder,
            self.query,
        ]
        try:
            result = self.runner(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as exc:
            raise RuleConfigurationError(f"policy engine {self.opa_binary} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise EvaluationError(f"policy evaluation timed out after {self.timeout}s", retryable=True) from exc
        except OSError as exc:
            raise EvaluationError(f"cannot start policy engine: {exc}", retryable=True) from exc

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if any(marker in stderr for marker in _CONFIGURATION_MARKERS):
                raise RuleConfigurationError(f"rule set failed to load: {stderr}")
            raise EvaluationError(f"policy evaluation failed: {stderr or result.returncode}")

        try:
            output = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise ResultSchemaError(f"policy engine returned invalid JSON: {exc}") from exc
        matches = decode_result_set(output)
        logger.debug("evaluated", extra=fields(asset_count=len(assets), match_count=len(matches)))
        return matches

    def _write_assets(self, document: str) -> None:
        path = self.assets_file_path
        try:
            if path.exists():
                os.remove(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(document, encoding="utf-8")
        except OSError as exc:
            raise EvaluationError(f"cannot write assets data file {path}: {exc}", retryable=True) from exc


__all__ = [
    "ASSETS_FILE_NAME",
    "ASSETS_FOLDER_NAME",
    "PolicyEvaluator",
    "RawMatch",
    "decode_result_set",
]
