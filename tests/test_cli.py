from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from Medical_FHIR_rev.cli import app

runner = CliRunner()


def _write(path: Path, payload: object) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def patient_file(tmp_path: Path) -> Path:
    return _write(
        tmp_path / "patient.json",
        {"resourceType": "Patient", "id": "p1", "name": [{"family": "Smith"}]},
    )


def test_validate_valid_patient_as_json(patient_file: Path) -> None:
    result = runner.invoke(app, ["validate", str(patient_file), "--json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert len(payload) == 1
    assert payload[0]["is_valid"] is True
    statuses = {aspect["aspect"]: aspect["status"] for aspect in payload[0]["aspects"]}
    assert statuses["structural"] == "executed"
    assert statuses["metadata"] == "executed"
    assert statuses["profile"] == "disabled"


def test_validate_bundle_reports_invalid_entries(tmp_path: Path) -> None:
    bundle = _write(
        tmp_path / "bundle.json",
        {
            "resourceType": "Bundle",
            "entry": [
                {"resource": {"resourceType": "Patient", "id": "ok"}},
                {"resource": {"resourceType": "Observation", "id": "obs"}},
            ],
        },
    )
    result = runner.invoke(app, ["validate", str(bundle), "--json", "--sequential"])
    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert [item["is_valid"] for item in payload] == [True, False]


def test_validate_with_requested_aspect(patient_file: Path) -> None:
    result = runner.invoke(app, ["validate", str(patient_file), "--json", "-a", "metadata"])
    assert result.exit_code == 0, result.output
    aspects = json.loads(result.stdout)[0]["aspects"]
    statuses = {aspect["aspect"]: aspect["status"] for aspect in aspects}
    assert statuses["structural"] == "skipped"
    assert statuses["metadata"] == "executed"


def test_validate_several_files_keeps_input_order(tmp_path: Path, patient_file: Path) -> None:
    other = _write(tmp_path / "other.json", [{"resourceType": "Patient", "id": "p2"}] * 2)
    result = runner.invoke(
        app,
        ["validate", str(patient_file), str(other), "--json", "--max-concurrent", "1"],
    )
    assert result.exit_code == 0, result.output
    assert [item["resource_id"] for item in json.loads(result.stdout)] == ["p1", "p2", "p2"]


def test_validate_rejects_non_json(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{oops", encoding="utf-8")
    result = runner.invoke(app, ["validate", str(broken)])
    assert result.exit_code == 2


def test_validate_table_output(patient_file: Path) -> None:
    result = runner.invoke(app, ["validate", str(patient_file)])
    assert result.exit_code == 0, result.output
    assert "Validation Results" in result.stdout


def test_cache_commands_against_filesystem_tier(tmp_path: Path, patient_file: Path) -> None:
    cache_dir = tmp_path / "cache"
    warm = runner.invoke(
        app,
        [
            "cache",
            "warm",
            "--cache-dir",
            str(cache_dir),
            "--category",
            "profile",
            "--profile",
            "http://example.org/StructureDefinition/a",
            "--profile",
            "http://example.org/StructureDefinition/b",
        ],
    )
    assert warm.exit_code == 0, warm.output
    assert "Warmed 2 entries" in warm.stdout

    validated = runner.invoke(
        app, ["validate", str(patient_file), "--cache-dir", str(cache_dir), "--json"]
    )
    assert validated.exit_code == 0, validated.output

    stats = runner.invoke(app, ["cache", "stats", "--cache-dir", str(cache_dir), "--json"])
    assert stats.exit_code == 0, stats.output
    payload = json.loads(stats.stdout)
    assert payload["layers"]["filesystem"]["enabled"] is True
    assert payload["layers"]["filesystem"]["entries"] == 4

    cleanup = runner.invoke(app, ["cache", "cleanup", "--cache-dir", str(cache_dir)])
    assert cleanup.exit_code == 0
    assert "Removed 0 expired entries" in cleanup.stdout

    cleared = runner.invoke(app, ["cache", "clear", "--cache-dir", str(cache_dir), "--confirm"])
    assert cleared.exit_code == 0
    assert "4 entries removed" in cleared.stdout


def test_cache_clear_can_be_aborted(tmp_path: Path) -> None:
    result = runner.invoke(
        app, ["cache", "clear", "--cache-dir", str(tmp_path / "cache")], input="n\n"
    )
    assert result.exit_code == 0
    assert "Operation cancelled." in result.stdout
