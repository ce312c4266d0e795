"""
Unit tests for the shared Azure CLI wrapper and resource-ID helpers.

The az binary is never executed: azure_helpers._run is replaced with a
fake that returns canned CompletedProcess objects.
"""

from __future__ import annotations

import inspect
import os
import subprocess

import pytest

import azure_helpers
from azure_helpers import AzCliError, parse_resource_id, remove_temp_files, run_az_command, write_temp_json


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(["az"], returncode, stdout, stderr)


@pytest.fixture
def fake_run(monkeypatch):
    """Queue of CompletedProcess results handed out by the fake _run."""
    calls = []
    results = []

    def _fake(cmd, capture=True):
        calls.append(cmd)
        return results.pop(0)

    monkeypatch.setattr(azure_helpers, "_run", _fake)
    return calls, results


class TestRunAzCommand:
    def test_appends_json_output_and_parses(self, fake_run) -> None:
        calls, results = fake_run
        results.append(_completed(stdout='{"name": "sub1"}'))
        assert run_az_command(["account", "show"]) == {"name": "sub1"}
        assert calls[0][-2:] == ["--output", "json"]
        assert calls[0][1:3] == ["account", "show"]

    def test_skips_warning_lines_before_json(self, fake_run) -> None:
        _, results = fake_run
        results.append(_completed(stdout='WARNING: preview command\n[\n  {"id": 1}\n]'))
        assert run_az_command(["policy", "exemption", "list"]) == [{"id": 1}]

    def test_empty_output_returns_none(self, fake_run) -> None:
        _, results = fake_run
        results.append(_completed(stdout="   "))
        assert run_az_command(["policy", "exemption", "list"]) is None

    def test_raw_output_when_not_parsing(self, fake_run) -> None:
        calls, results = fake_run
        results.append(_completed(stdout="done\n"))
        assert run_az_command(["policy", "exemption", "delete"], parse_json=False) == "done"
        assert "--output" not in calls[0]

    def test_failure_raises_when_not_exiting(self, fake_run) -> None:
        _, results = fake_run
        results.append(_completed(returncode=1, stderr="ResourceNotFound"))
        with pytest.raises(AzCliError) as exc:
            run_az_command(["vm", "show"], exit_on_error=False)
        assert "ResourceNotFound" in str(exc.value)
        assert exc.value.az_args == ["vm", "show"]

    def test_failure_exits_by_default(self, fake_run) -> None:
        _, results = fake_run
        results.append(_completed(returncode=1, stderr="boom"))
        with pytest.raises(SystemExit) as exc:
            run_az_command(["vm", "show"])
        assert exc.value.code == 1

    def test_auth_error_refreshes_and_retries_once(self, fake_run, monkeypatch) -> None:
        calls, results = fake_run
        refreshed = []
        monkeypatch.setattr(azure_helpers, "refresh_token", lambda: refreshed.append(True))
        results.append(_completed(returncode=1, stderr="AADSTS700082: token expired"))
        results.append(_completed(stdout='{"ok": true}'))
        assert run_az_command(["account", "show"]) == {"ok": True}
        assert refreshed == [True]
        assert len(calls) == 2


class TestParseResourceId:
    def test_virtual_machine_id(self) -> None:
        info = parse_resource_id(
            "/subscriptions/0000/resourceGroups/rg-app/providers/Microsoft.Compute/virtualMachines/vm01"
        )
        assert info == {
            "subscription": "0000",
            "resource_group": "rg-app",
            "provider": "Microsoft.Compute",
            "type": "virtualMachines",
            "name": "vm01",
        }

    def test_case_insensitive_segments(self) -> None:
        info = parse_resource_id("/SUBSCRIPTIONS/abc/RESOURCEGROUPS/Rg1")
        assert info["subscription"] == "abc"
        assert info["resource_group"] == "Rg1"
        assert info["name"] == "Rg1"

    def test_subscription_scope(self) -> None:
        info = parse_resource_id("/subscriptions/abc")
        assert info["name"] == "abc"
        assert info["resource_group"] == ""

    def test_management_group_scope(self) -> None:
        info = parse_resource_id("/providers/Microsoft.Management/managementGroups/contoso")
        assert info["type"] == "managementGroups"
        assert info["name"] == "contoso"

    def test_empty(self) -> None:
        assert parse_resource_id("")["name"] == ""


class TestTempFiles:
    def test_write_and_remove(self) -> None:
        path = write_temp_json({"a": 1}, "test-")
        with open(path, encoding="utf-8") as f:
            assert '"a": 1' in f.read()
        remove_temp_files([path])
        assert not os.path.exists(path)

    def test_remove_ignores_missing_and_empty(self, tmp_path) -> None:
        remove_temp_files([str(tmp_path / "missing.json"), None, ""])


class TestHelperDocumentation:
    def test_every_helper_has_a_docstring(self) -> None:
        missing = [
            name for name, fn in inspect.getmembers(azure_helpers, inspect.isfunction)
            if fn.__module__ == "azure_helpers" and not (fn.__doc__ or "").strip()
        ]
        assert missing == []

    def test_print_helpers_document_their_arguments(self) -> None:
        for fn in (azure_helpers.print_section, azure_helpers.print_subsection,
                   azure_helpers.print_key_value, azure_helpers.print_box,
                   azure_helpers.print_table, azure_helpers.set_subscription):
            assert "Args:" in fn.__doc__, fn.__name__
