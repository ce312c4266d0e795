"""
Unit tests for exemption expiry classification, argument building,
CSV bulk operations and reporting.

run_az_command is patched on the module so no Azure calls are made.
"""

from __future__ import annotations

import csv
from datetime import datetime, timedelta, timezone

import pytest

import manage_policy_exemptions as mpe
from azure_helpers import AzCliError

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
ASSIGNMENT = "/subscriptions/0000/providers/Microsoft.Authorization/policyAssignments/nist"


@pytest.fixture
def az_calls(monkeypatch):
    """Record az invocations; args containing 'fail-me' raise AzCliError."""
    calls = []

    def _fake(args, parse_json=True, exit_on_error=True):
        calls.append(list(args))
        if any("fail-me" in str(a) for a in args):
            raise AzCliError("AuthorizationFailed", args)
        return {}

    monkeypatch.setattr(mpe, "run_az_command", _fake)
    return calls


def _write_csv(path, header, rows):
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        writer.writerows(rows)
    return str(path)


class TestClassifyExpiry:
    def test_expired(self) -> None:
        assert mpe.classify_expiry(NOW - timedelta(days=1), NOW) == "EXPIRED"

    def test_expiring_soon(self) -> None:
        assert mpe.classify_expiry(NOW + timedelta(days=10), NOW, warn_days=30) == "EXPIRING SOON"

    def test_active(self) -> None:
        assert mpe.classify_expiry(NOW + timedelta(days=60), NOW, warn_days=30) == "ACTIVE"

    def test_no_expiry(self) -> None:
        assert mpe.classify_expiry(None, NOW) == "NO EXPIRY"
        assert mpe.classify_expiry("", NOW) == "NO EXPIRY"

    def test_exactly_now_is_not_expired(self) -> None:
        assert mpe.classify_expiry(NOW, NOW) == "EXPIRING SOON"

    def test_window_edge_is_expiring_soon(self) -> None:
        assert mpe.classify_expiry(NOW + timedelta(days=30), NOW, warn_days=30) == "EXPIRING SOON"
        assert mpe.classify_expiry(NOW + timedelta(days=30, seconds=1), NOW, warn_days=30) == "ACTIVE"

    def test_custom_window(self) -> None:
        assert mpe.classify_expiry(NOW + timedelta(days=10), NOW, warn_days=7) == "ACTIVE"

    def test_iso_strings(self) -> None:
        assert mpe.classify_expiry("2026-10-18T00:00:00Z", NOW) == "EXPIRED"
        assert mpe.classify_expiry("2026-10-25T00:00:00.1234567+00:00", NOW) == "EXPIRING SOON"
        assert mpe.classify_expiry("2027-06-01", NOW) == "ACTIVE"

    def test_naive_datetime_treated_as_utc(self) -> None:
        assert mpe.classify_expiry(datetime(2026, 10, 19, 11, 0), NOW) == "EXPIRED"

    def test_invalid_timestamp(self) -> None:
        with pytest.raises(mpe.ExemptionError):
            mpe.classify_expiry("next tuesday", NOW)


class TestResolveExpiry:
    def test_days_from_now(self) -> None:
        assert mpe.resolve_expiry(expires_in_days=90, now=NOW) == "2027-01-17T12:00:00Z"

    def test_explicit_date_wins(self) -> None:
        assert mpe.resolve_expiry("2027-01-01", 5, now=NOW) == "2027-01-01T00:00:00Z"

    def test_no_expiry(self) -> None:
        assert mpe.resolve_expiry(now=NOW) is None

    def test_past_date_rejected(self) -> None:
        with pytest.raises(mpe.ExemptionError):
            mpe.resolve_expiry("2020-01-01", now=NOW)

    def test_non_positive_days_rejected(self) -> None:
        with pytest.raises(mpe.ExemptionError):
            mpe.resolve_expiry(expires_in_days=0, now=NOW)


class TestBuildExemptionArgs:
    def test_minimal(self) -> None:
        args = mpe.build_exemption_args("ex1", ASSIGNMENT, "/subscriptions/0000")
        assert args[:3] == ["policy", "exemption", "create"]
        assert args[args.index("--exemption-category") + 1] == "Waiver"
        assert args[args.index("--scope") + 1] == "/subscriptions/0000"
        assert "--expires-on" not in args

    def test_category_is_normalized(self) -> None:
        args = mpe.build_exemption_args("ex1", ASSIGNMENT, "/subscriptions/0000", category="mitigated")
        assert args[args.index("--exemption-category") + 1] == "Mitigated"

    def test_invalid_category(self) -> None:
        with pytest.raises(mpe.ExemptionError):
            mpe.build_exemption_args("ex1", ASSIGNMENT, "/subscriptions/0000", category="Temporary")

    def test_missing_name_or_scope(self) -> None:
        with pytest.raises(mpe.ExemptionError):
            mpe.build_exemption_args(" ", ASSIGNMENT, "/subscriptions/0000")
        with pytest.raises(mpe.ExemptionError):
            mpe.build_exemption_args("ex1", ASSIGNMENT, "subscriptions/0000")
        with pytest.raises(mpe.ExemptionError):
            mpe.build_exemption_args("ex1", "", "/subscriptions/0000")

    def test_optional_fields(self) -> None:
        args = mpe.build_exemption_args(
            "ex1", ASSIGNMENT, "/subscriptions/0000",
            expires_on="2027-01-01T00:00:00Z", display_name="Legacy", description="CHG-1",
            reference_ids=["ref1", "ref2"], metadata={"ticket": "CHG-1"},
        )
        idx = args.index("--policy-definition-reference-ids")
        assert args[idx + 1:idx + 3] == ["ref1", "ref2"]
        assert args[args.index("--expires-on") + 1] == "2027-01-01T00:00:00Z"
        assert "ticket=CHG-1" in args


class TestHelperRoutines:
    def test_resource_group_scope(self, az_calls) -> None:
        mpe.exempt_resource_group("0000", "rg-legacy", "ex1", ASSIGNMENT)
        args = az_calls[0]
        assert args[args.index("--scope") + 1] == "/subscriptions/0000/resourceGroups/rg-legacy"

    def test_subscription_scope(self, az_calls) -> None:
        mpe.exempt_subscription("0000", "ex1", ASSIGNMENT, category="Mitigated")
        args = az_calls[0]
        assert args[args.index("--scope") + 1] == "/subscriptions/0000"
        assert "Mitigated" in args

    def test_policy_references_required(self, az_calls) -> None:
        with pytest.raises(mpe.ExemptionError):
            mpe.exempt_policy_references("/subscriptions/0000", "ex1", ASSIGNMENT, [])
        assert az_calls == []

    def test_remove(self, az_calls) -> None:
        mpe.remove_exemption("ex1", "/subscriptions/0000")
        assert az_calls[0] == ["policy", "exemption", "delete", "--name", "ex1", "--scope", "/subscriptions/0000"]


class TestBulkOperations:
    HEADER = ["Name", "Scope", "Policy Assignment Id", "Category", "ExpiresOn",
              "DisplayName", "Description", "PolicyDefinitionReferenceIds"]

    def test_bulk_create_continues_after_failures(self, tmp_path, az_calls) -> None:
        path = _write_csv(tmp_path / "ex.csv", self.HEADER, [
            ["ex-ok", "/subscriptions/0000", ASSIGNMENT, "Waiver", "2027-01-01", "", "", "ref1;ref2"],
            ["fail-me", "/subscriptions/0000", ASSIGNMENT, "Waiver", "", "", "", ""],
            ["ex-bad-cat", "/subscriptions/0000", ASSIGNMENT, "Forever", "", "", "", ""],
            ["", "", "", "", "", "", "", ""],
            ["ex-last", "/subscriptions/0000/resourceGroups/rg", ASSIGNMENT, "mitigated", "", "", "", ""],
        ])
        results = mpe.bulk_create_from_csv(path, now=NOW)
        assert results["succeeded"] == ["ex-ok", "ex-last"]
        assert [name for name, _ in results["failed"]] == ["fail-me", "ex-bad-cat"]
        # bad category never reaches az; blank row is skipped
        assert len(az_calls) == 3
        first = az_calls[0]
        idx = first.index("--policy-definition-reference-ids")
        assert first[idx + 1:idx + 3] == ["ref1", "ref2"]
        assert first[first.index("--expires-on") + 1] == "2027-01-01T00:00:00Z"

    def test_bulk_create_rejects_past_expiry_row(self, tmp_path, az_calls) -> None:
        path = _write_csv(tmp_path / "ex.csv", self.HEADER, [
            ["ex-old", "/subscriptions/0000", ASSIGNMENT, "Waiver", "2020-01-01", "", "", ""],
        ])
        results = mpe.bulk_create_from_csv(path, now=NOW)
        assert results["succeeded"] == []
        assert results["failed"][0][0] == "ex-old"
        assert az_calls == []

    def test_bulk_remove(self, tmp_path, az_calls) -> None:
        path = _write_csv(tmp_path / "rm.csv", ["name", "scope"], [
            ["ex1", "/subscriptions/0000"],
            ["fail-me", "/subscriptions/0000"],
            ["ex3", ""],
        ])
        results = mpe.bulk_remove_from_csv(path)
        assert results["succeeded"] == ["ex1"]
        assert [name for name, _ in results["failed"]] == ["fail-me", "ex3"]
        assert len(az_calls) == 2


class TestReport:
    EXEMPTIONS = [
        {
            "id": "/subscriptions/0000/resourceGroups/rg1/providers/Microsoft.Authorization/policyExemptions/active",
            "name": "active",
            "expiresOn": (NOW + timedelta(days=90)).isoformat(),
            "exemptionCategory": "Waiver",
            "policyAssignmentId": ASSIGNMENT,
        },
        {
            "id": "/subscriptions/0000/providers/Microsoft.Authorization/policyExemptions/forever",
            "name": "forever",
            "expiresOn": None,
            "exemptionCategory": "Mitigated",
            "policyAssignmentId": ASSIGNMENT,
        },
        {
            "id": "/subscriptions/0000/providers/Microsoft.Authorization/policyExemptions/old",
            "name": "old",
            "properties": {
                "expiresOn": "2026-09-01T00:00:00Z",
                "exemptionCategory": "Waiver",
                "policyAssignmentId": ASSIGNMENT,
            },
        },
        {
            "id": "/subscriptions/0000/providers/Microsoft.Authorization/policyExemptions/soon",
            "name": "soon",
            "expiresOn": "2026-10-29T12:00:00Z",
            "exemptionCategory": "Waiver",
            "policyAssignmentId": ASSIGNMENT,
        },
    ]

    def test_sorted_most_urgent_first(self) -> None:
        rows = mpe.build_exemption_report(self.EXEMPTIONS, now=NOW)
        assert [r["name"] for r in rows] == ["old", "soon", "active", "forever"]
        assert [r["status"] for r in rows] == ["EXPIRED", "EXPIRING SOON", "ACTIVE", "NO EXPIRY"]

    def test_row_fields(self) -> None:
        rows = {r["name"]: r for r in mpe.build_exemption_report(self.EXEMPTIONS, now=NOW)}
        assert rows["soon"]["days_left"] == 10
        assert rows["old"]["category"] == "Waiver"
        assert rows["active"]["scope"] == "/subscriptions/0000/resourceGroups/rg1"
        assert rows["active"]["assignment"] == "nist"
        assert rows["forever"]["expires_on"] == ""

    def test_write_csv(self, tmp_path) -> None:
        rows = mpe.build_exemption_report(self.EXEMPTIONS, now=NOW)
        path = tmp_path / "report.csv"
        mpe.write_report_csv(rows, str(path), mpe.REPORT_FIELDS)
        with open(path, encoding="utf-8", newline="") as f:
            written = list(csv.DictReader(f))
        assert [r["name"] for r in written] == ["old", "soon", "active", "forever"]
        assert written[0]["status"] == "EXPIRED"

    def test_compliance_report_counts_and_csv(self, tmp_path, monkeypatch) -> None:
        states = [
            {"resourceId": "/r/1", "policyDefinitionReferenceId": "ref-a", "complianceState": "NonCompliant"},
            {"resourceId": "/r/2", "policyDefinitionReferenceId": "ref-a", "complianceState": "NonCompliant"},
            {"resourceId": "/r/3", "policyDefinitionName": "def-b", "complianceState": "NonCompliant"},
        ]
        seen = []
        monkeypatch.setattr(mpe, "run_az_command", lambda args, **kw: seen.append(args) or states)
        path = tmp_path / "nc.csv"
        result = mpe.compliance_report(assignment="nist", output_csv=str(path))
        assert result == states
        assert seen[0][seen[0].index("--policy-assignment") + 1] == "nist"
        with open(path, encoding="utf-8", newline="") as f:
            assert len(list(csv.DictReader(f))) == 3


class TestParseMetadata:
    def test_pairs(self) -> None:
        assert mpe.parse_metadata(["ticket=CHG-1", "owner = team-a"]) == {"ticket": "CHG-1", "owner": "team-a"}

    def test_invalid(self) -> None:
        with pytest.raises(mpe.ExemptionError):
            mpe.parse_metadata(["ticket"])


class TestReadExemptionCsv:
    def test_non_utf8_file(self, tmp_path) -> None:
        path = tmp_path / "ex.csv"
        path.write_bytes(b"Name,Scope\n\xff\xfe,/subscriptions/0000\n")
        with pytest.raises(mpe.ExemptionError, match="not UTF-8"):
            mpe.read_exemption_csv(str(path))

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(mpe.ExemptionError, match="Cannot read"):
            mpe.read_exemption_csv(str(tmp_path / "missing.csv"))

    def test_malformed_csv(self, tmp_path) -> None:
        path = tmp_path / "ex.csv"
        path.write_text("Name,Scope\n" + "x" * 200000 + ",/subscriptions/0000\n", encoding="utf-8")
        with pytest.raises(mpe.ExemptionError, match="Invalid CSV"):
            mpe.read_exemption_csv(str(path))


class TestAssignmentColumn:
    def test_management_group_assignment(self) -> None:
        record = {
            "name": "mg",
            "policyAssignmentId": "/providers/Microsoft.Management/managementGroups/contoso"
                                  "/providers/Microsoft.Authorization/policyAssignments/iso",
        }
        assert mpe.build_exemption_report([record], now=NOW)[0]["assignment"] == "iso"


@pytest.fixture
def cli(monkeypatch, az_calls):
    """main() with login checks skipped and az calls recorded."""
    monkeypatch.setattr(mpe, "ensure_az_installed", lambda: None)
    monkeypatch.setattr(mpe, "ensure_authenticated", lambda: None)
    return az_calls


class TestMain:
    HEADER = ["Name", "Scope", "PolicyAssignmentId"]

    def test_bulk_create_all_succeed(self, tmp_path, cli) -> None:
        path = _write_csv(tmp_path / "ex.csv", self.HEADER, [["ex1", "/subscriptions/0000", ASSIGNMENT]])
        assert mpe.main(["bulk-create", "--csv", path]) == 0
        assert len(cli) == 1

    def test_bulk_create_exit_code_on_failed_row(self, tmp_path, cli) -> None:
        path = _write_csv(tmp_path / "ex.csv", self.HEADER, [
            ["fail-me", "/subscriptions/0000", ASSIGNMENT],
            ["ex2", "/subscriptions/0000", ASSIGNMENT],
        ])
        assert mpe.main(["bulk-create", "--csv", path]) == 1
        assert len(cli) == 2

    def test_bulk_create_non_utf8_csv(self, tmp_path, cli) -> None:
        path = tmp_path / "ex.csv"
        path.write_bytes(b"Name,Scope\n\xff\xfe,/subscriptions/0000\n")
        assert mpe.main(["bulk-create", "--csv", str(path)]) == 1
        assert cli == []

    def test_bulk_remove_needs_delete_confirmation(self, tmp_path, cli, monkeypatch) -> None:
        path = _write_csv(tmp_path / "rm.csv", ["Name", "Scope"], [["ex1", "/subscriptions/0000"]])
        monkeypatch.setattr(mpe, "styled_input", lambda prompt: "delete")
        assert mpe.main(["bulk-remove", "--csv", path]) == 0
        assert cli == []

    def test_bulk_remove_confirmed(self, tmp_path, cli, monkeypatch) -> None:
        path = _write_csv(tmp_path / "rm.csv", ["Name", "Scope"], [["ex1", "/subscriptions/0000"]])
        monkeypatch.setattr(mpe, "styled_input", lambda prompt: "DELETE")
        assert mpe.main(["bulk-remove", "--csv", path]) == 0
        assert cli[0][:3] == ["policy", "exemption", "delete"]

    def test_bulk_remove_yes_skips_prompt_and_reports_failures(self, tmp_path, cli, monkeypatch) -> None:
        def _no_prompt(prompt):
            raise AssertionError("prompted despite --yes")

        monkeypatch.setattr(mpe, "styled_input", _no_prompt)
        path = _write_csv(tmp_path / "rm.csv", ["Name", "Scope"], [
            ["ex1", "/subscriptions/0000"],
            ["fail-me", "/subscriptions/0000"],
        ])
        assert mpe.main(["bulk-remove", "--csv", path, "--yes"]) == 1
        assert len(cli) == 2

    def test_create_rejects_past_expiry(self, cli) -> None:
        rc = mpe.main(["create", "--name", "ex1", "--assignment", ASSIGNMENT,
                       "--scope", "/subscriptions/0000", "--expires-on", "2020-01-01"])
        assert rc == 1
        assert cli == []
