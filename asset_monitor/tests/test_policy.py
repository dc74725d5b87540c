"""Tests for the policy engine adapter."""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from asset_monitor.errors import EvaluationError, ResultSchemaError, RuleConfigurationError, is_retryable
from asset_monitor.model import Asset
from asset_monitor.policy import PolicyEvaluator, decode_result_set


def _result(values):
    return {"result": [{"expressions": [{"value": values, "text": "data.validator.gcp.lib.audit"}]}]}


def test_decode_result_set_returns_matches() -> None:
    matches = decode_result_set(
        _result([{"violation": {"msg": "bad", "details": {"k": 1}}, "constraint_config": {"kind": "K"}}])
    )

    assert len(matches) == 1
    assert matches[0].message == "bad"
    assert matches[0].details == {"k": 1}
    assert matches[0].constraint_config == {"kind": "K"}


def test_decode_result_set_treats_undefined_as_compliant() -> None:
    assert decode_result_set({}) == []
    assert decode_result_set({"result": []}) == []
    assert decode_result_set(_result([])) == []
    assert decode_result_set(_result(None)) == []


@pytest.mark.parametrize(
    "document",
    [
        [],
        {"result": "x"},
        {"result": [{"expressions": [{}]}]},
        _result({"violation": {}}),
        _result(["x"]),
        _result([{"constraint_config": {}}]),
        _result([{"violation": "bad", "constraint_config": {}}]),
        _result([{"violation": {}}]),
    ],
)
def test_decode_result_set_rejects_mistyped_results(document) -> None:
    with pytest.raises(ResultSchemaError):
        decode_result_set(document)


class _Runner:
    def __init__(self, returncode=0, stdout="{}", stderr="", error=None) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.error = error
        self.commands = []

    def __call__(self, cmd, **kwargs):
        self.commands.append((cmd, kwargs))
        if self.error is not None:
            raise self.error
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


def _evaluator(tmp_path, runner) -> PolicyEvaluator:
    rules = tmp_path / "opa"
    modules = rules / "modules"
    modules.mkdir(parents=True)
    (modules / "b.rego").write_text("package b\n", encoding="utf-8")
    (modules / "a.rego").write_text("package a\n", encoding="utf-8")
    return PolicyEvaluator(
        opa_folder=str(rules),
        writable_folder=str(tmp_path / "writable"),
        rego_modules_folder=str(modules),
        timeout=5,
        runner=runner,
    )


def test_evaluate_writes_assets_and_decodes_output(tmp_path) -> None:
    """Assets land in the data file and the audit query output is decoded."""

    runner = _Runner(stdout=json.dumps(_result([{"violation": {"msg": "m"}, "constraint_config": {}}])))
    evaluator = _evaluator(tmp_path, runner)

    matches = evaluator.evaluate([Asset(name="//a", resource={"data": {}})])

    written = json.loads(evaluator.assets_file_path.read_text(encoding="utf-8"))
    assert written[0]["name"] == "//a"
    assert [m.message for m in matches] == ["m"]
    cmd, kwargs = runner.commands[0]
    assert cmd[:4] == ["opa", "eval", "--format", "json"]
    assert cmd[-1] == "data.validator.gcp.lib.audit"
    assert kwargs["timeout"] == 5


def test_rule_sources_are_sorted_by_name(tmp_path) -> None:
    evaluator = _evaluator(tmp_path, _Runner())

    assert list(evaluator.rule_sources()) == ["a.rego", "b.rego"]


def test_missing_rule_folder_is_configuration_error(tmp_path) -> None:
    evaluator = PolicyEvaluator(
        opa_folder=str(tmp_path / "nope"),
        writable_folder=str(tmp_path / "w"),
        rego_modules_folder=str(tmp_path / "nope"),
        runner=_Runner(),
    )

    with pytest.raises(RuleConfigurationError) as excinfo:
        evaluator.evaluate([])
    assert not is_retryable(excinfo.value)
    with pytest.raises(RuleConfigurationError):
        evaluator.rule_sources()


def test_engine_failures_are_classified(tmp_path) -> None:
    """Timeouts retry; compile errors and unknown failures do not."""

    timeout = _evaluator(tmp_path, _Runner(error=subprocess.TimeoutExpired(["opa"], 5)))
    with pytest.raises(EvaluationError) as excinfo:
        timeout.evaluate([])
    assert is_retryable(excinfo.value)

    broken = PolicyEvaluator(
        timeout.opa_folder,
        timeout.writable_folder,
        timeout.rego_modules_folder,
        runner=_Runner(returncode=1, stderr="1 error occurred: rego_parse_error: unexpected eof"),
    )
    with pytest.raises(RuleConfigurationError):
        broken.evaluate([])

    failing = PolicyEvaluator(
        timeout.opa_folder,
        timeout.writable_folder,
        timeout.rego_modules_folder,
        runner=_Runner(returncode=2, stderr="eval_conflict_error"),
    )
    with pytest.raises(EvaluationError) as excinfo:
        failing.evaluate([])
    assert not is_retryable(excinfo.value)

    missing = PolicyEvaluator(
        timeout.opa_folder,
        timeout.writable_folder,
        timeout.rego_modules_folder,
        runner=_Runner(error=FileNotFoundError("opa")),
    )
    with pytest.raises(RuleConfigurationError):
        missing.evaluate([])


def test_invalid_engine_output_is_schema_error(tmp_path) -> None:
    evaluator = _evaluator(tmp_path, _Runner(stdout="not json"))

    with pytest.raises(ResultSchemaError):
        evaluator.evaluate([])
