#!/usr/bin/env python3
"""
Azure Policy Exemption Manager
==============================
Creates, removes and reports on time-bound Azure Policy exemptions.

Key features:
  - One-off exemptions at subscription, resource group or resource scope
  - Partial exemptions for selected policies of an initiative assignment
  - Bulk creation and removal driven by a CSV file (per-row failures are
    reported and skipped, the rest of the file is still processed)
  - Exemption report flagging EXPIRED and EXPIRING SOON records
  - Non-compliance report exported to CSV

Usage:
  python manage_policy_exemptions.py create --name ex-1 --assignment <id> --resource-group rg-app --expires-in-days 90
  python manage_policy_exemptions.py bulk-create --csv exemptions.csv
  python manage_policy_exemptions.py bulk-remove --csv exemptions.csv
  python manage_policy_exemptions.py report --warn-days 30 --output-csv report.csv
  python manage_policy_exemptions.py compliance-report --assignment my-assignment --output-csv noncompliant.csv
"""

import argparse
import csv
import re
import sys
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

import azure_helpers
from azure_helpers import (
    AzCliError,
    Colors,
    CLOCK_ICON,
    CROSS,
    FILE_ICON,
    KEY_ICON,
    SHIELD_ICON,
    TRASH_ICON,
    ensure_authenticated,
    ensure_az_installed,
    get_current_subscription,
    parse_resource_id,
    print_banner,
    print_box,
    print_completion_banner,
    print_detail,
    print_error,
    print_info,
    print_key_value,
    print_section,
    print_skip,
    print_subsection,
    print_success,
    print_table,
    print_warn,
    run_az_command,
    set_subscription,
    styled_input,
)


EXEMPTION_CATEGORIES = ("Waiver", "Mitigated")
DEFAULT_CATEGORY = "Waiver"
DEFAULT_WARN_DAYS = 30

STATUS_EXPIRED = "EXPIRED"
STATUS_EXPIRING_SOON = "EXPIRING SOON"
STATUS_ACTIVE = "ACTIVE"
STATUS_NO_EXPIRY = "NO EXPIRY"
# Report order, most urgent first
STATUS_ORDER = (STATUS_EXPIRED, STATUS_EXPIRING_SOON, STATUS_ACTIVE, STATUS_NO_EXPIRY)

EXEMPTION_ID_MARKER = "/providers/microsoft.authorization/policyexemptions/"

REPORT_FIELDS = ["name", "display_name", "status", "days_left", "expires_on",
                 "category", "assignment", "scope"]
COMPLIANCE_FIELDS = ["resourceId", "resourceType", "resourceGroup", "policyAssignmentName",
                     "policyDefinitionName", "policyDefinitionReferenceId", "complianceState", "timestamp"]


class ExemptionError(ValueError):
    """An exemption request or CSV row is invalid."""


# ══════════════════════════════════════════════════════════════
# Timestamps and Expiry Classification
# ══════════════════════════════════════════════════════════════

def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse an Azure timestamp into an aware UTC datetime.
    Accepts datetimes, ISO-8601 strings with a 'Z' suffix or offset, and
    plain dates. Naive values are treated as UTC. Empty values give None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip().replace("Z", "+00:00")
        # Azure emits 7 fractional digits; fromisoformat accepts at most 6
        text = re.sub(r"(\.\d{6})\d+", r"\1", text)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ExemptionError(f"Invalid timestamp '{value}'.") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def classify_expiry(expires_on, now: Optional[datetime] = None,
                    warn_days: int = DEFAULT_WARN_DAYS) -> str:
    """
    Label an exemption by its expiry date.

    Args:
        expires_on: Expiry as datetime or ISO string, or None.
        now:        Reference time (default: current UTC time).
        warn_days:  Window in days within which an exemption is
                    flagged as expiring soon.

    Returns:
        One of "EXPIRED", "EXPIRING SOON", "ACTIVE", "NO EXPIRY".
    """
    expiry = parse_timestamp(expires_on)
    if expiry is None:
        return STATUS_NO_EXPIRY
    now = parse_timestamp(now) if now is not None else datetime.now(timezone.utc)
    if expiry < now:
        return STATUS_EXPIRED
    if expiry <= now + timedelta(days=warn_days):
        return STATUS_EXPIRING_SOON
    return STATUS_ACTIVE


def resolve_expiry(expires_on=None, expires_in_days: Optional[int] = None,
                   now: Optional[datetime] = None) -> Optional[str]:
    """
    Work out the expiry to send to Azure, as an ISO-8601 UTC string.
    An explicit date wins over a relative number of days. None means the
    exemption never expires.

    Raises:
        ExemptionError: If the expiry is in the past or days is not positive.
    """
    now = parse_timestamp(now) if now is not None else datetime.now(timezone.utc)
    if expires_on:
        expiry = parse_timestamp(expires_on)
    elif expires_in_days is not None:
        if expires_in_days <= 0:
            raise ExemptionError("Expiry in days must be a positive number.")
        expiry = now + timedelta(days=expires_in_days)
    else:
        return None
    if expiry <= now:
        raise ExemptionError(f"Expiry {expiry.isoformat()} is in the past.")
    return expiry.strftime("%Y-%m-%dT%H:%M:%SZ")


# ══════════════════════════════════════════════════════════════
# Creating and Removing Exemptions
# ══════════════════════════════════════════════════════════════

def build_exemption_args(name: str, assignment_id: str, scope: str,
                         category: str = DEFAULT_CATEGORY,
                         expires_on: Optional[str] = None,
                         display_name: Optional[str] = None,
                         description: Optional[str] = None,
                         reference_ids: Optional[list] = None,
                         metadata: Optional[dict] = None) -> list:
    """
    Build the 'az policy exemption create' argument list for one record.

    Raises:
        ExemptionError: On a missing name/assignment/scope or an unknown category.
    """
    if not name or not name.strip():
        raise ExemptionError("Exemption name is required.")
    if not assignment_id or not assignment_id.strip():
        raise ExemptionError("Policy assignment ID is required.")
    if not scope or not scope.startswith("/"):
        raise ExemptionError(f"Invalid scope '{scope}'. Scopes must start with '/'.")
    matched = [c for c in EXEMPTION_CATEGORIES if c.lower() == (category or "").strip().lower()]
    if not matched:
        raise ExemptionError(f"Invalid category '{category}'. Use one of: {', '.join(EXEMPTION_CATEGORIES)}.")

    args = [
        "policy", "exemption", "create",
        "--name", name.strip(),
        "--policy-assignment", assignment_id.strip(),
        "--exemption-category", matched[0],
        "--scope", scope,
    ]
    if expires_on:
        args += ["--expires-on", expires_on]
    if display_name:
        args += ["--display-name", display_name]
    if description:
        args += ["--description", description]
    if reference_ids:
        args += ["--policy-definition-reference-ids"] + list(reference_ids)
    if metadata:
        args += ["--metadata"] + [f"{k}={v}" for k, v in metadata.items()]
    return args


def create_exemption(name: str, assignment_id: str, scope: str,
                     category: str = DEFAULT_CATEGORY,
                     expires_on: Optional[str] = None,
                     display_name: Optional[str] = None,
                     description: Optional[str] = None,
                     reference_ids: Optional[list] = None,
                     metadata: Optional[dict] = None,
                     exit_on_error: bool = True) -> dict:
    """Submit a single exemption record and return what Azure stored."""
    args = build_exemption_args(name, assignment_id, scope, category, expires_on,
                                display_name, description, reference_ids, metadata)
    print_info(f"Creating exemption '{Colors.BOLD}{name}{Colors.RESET}' ({args[args.index('--exemption-category') + 1]})")
    print_detail(f"Scope: {scope}")
    if expires_on:
        print_detail(f"Expires: {expires_on}")
    if reference_ids:
        print_detail(f"Policies: {', '.join(reference_ids)}")
    result = run_az_command(args, exit_on_error=exit_on_error) or {}
    print_success(f"Exemption '{name}' created.")
    return result


def exempt_subscription(subscription_id: str, name: str, assignment_id: str, **kwargs) -> dict:
    """Exempt a whole subscription from an assignment."""
    return create_exemption(name, assignment_id, f"/subscriptions/{subscription_id}", **kwargs)


def exempt_resource_group(subscription_id: str, resource_group: str, name: str,
                          assignment_id: str, **kwargs) -> dict:
    """Exempt one resource group from an assignment."""
    scope = f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
    return create_exemption(name, assignment_id, scope, **kwargs)


def exempt_resource(resource_id: str, name: str, assignment_id: str, **kwargs) -> dict:
    """Exempt a single resource (its full resource ID is the scope)."""
    return create_exemption(name, assignment_id, resource_id, **kwargs)


def exempt_policy_references(scope: str, name: str, assignment_id: str,
                             reference_ids: list, **kwargs) -> dict:
    """
    Exempt a scope from only some policies of an initiative assignment,
    identified by their policyDefinitionReferenceId.
    """
    if not reference_ids:
        raise ExemptionError("At least one policy definition reference ID is required.")
    return create_exemption(name, assignment_id, scope, reference_ids=reference_ids, **kwargs)


def remove_exemption(name: str, scope: str, exit_on_error: bool = True):
    """
    Delete one exemption.

    Args:
        name:          Exemption name.
        scope:         Scope the exemption was created at.
        exit_on_error: Exit on az failure (False raises AzCliError instead).
    """
    if not name or not scope:
        raise ExemptionError("Both name and scope are required to remove an exemption.")
    print_info(f"Removing exemption '{Colors.BOLD}{name}{Colors.RESET}'")
    print_detail(f"Scope: {scope}")
    run_az_command(["policy", "exemption", "delete", "--name", name, "--scope", scope],
                   parse_json=False, exit_on_error=exit_on_error)
    print_success(f"Exemption '{name}' removed.")


# ══════════════════════════════════════════════════════════════
# CSV Bulk Operations
# Columns (case-insensitive): Name, Scope, PolicyAssignmentId,
# Category, ExpiresOn, DisplayName, Description,
# PolicyDefinitionReferenceIds (separated by ';').
# Removal only needs Name and Scope.
# ══════════════════════════════════════════════════════════════

def _normalize_key(key: str) -> str:
    """Lowercase a CSV header and drop everything but letters."""
    return re.sub(r"[^a-z]", "", (key or "").lower())


def read_exemption_csv(path: str) -> list:
    """
    Read exemption rows from a CSV file. Header names are matched without
    regard to case, spaces or underscores. Blank rows are skipped.

    Returns:
        List of dicts keyed by normalized column name (e.g. 'policyassignmentid').

    Raises:
        ExemptionError: If the file is missing, unreadable, not UTF-8 or
            not parseable as CSV.
    """
    rows = []
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            for raw in csv.DictReader(f):
                row = {_normalize_key(k): (v or "").strip() for k, v in raw.items() if k}
                if any(row.values()):
                    rows.append(row)
    except UnicodeDecodeError as e:
        raise ExemptionError(f"CSV file '{path}' is not UTF-8 encoded: {e}") from e
    except csv.Error as e:
        raise ExemptionError(f"Invalid CSV in '{path}': {e}") from e
    except OSError as e:
        raise ExemptionError(f"Cannot read CSV file '{path}': {e}") from e
    return rows


def _split_ids(value: str) -> list:
    """Split a reference ID list on semicolons or commas."""
    return [part.strip() for part in re.split(r"[;,]", value or "") if part.strip()]


def bulk_create_from_csv(path: str, now: Optional[datetime] = None) -> dict:
    """
    Create one exemption per CSV row. A failing row is reported and the
    remaining rows are still processed.

    Returns:
        Dict with 'succeeded' (list of names) and 'failed' (list of
        (name, error message) tuples).
    """
    rows = read_exemption_csv(path)
    print_info(f"Loaded {Colors.BOLD}{len(rows)}{Colors.RESET} row(s) from {path}")
    results = {"succeeded": [], "failed": []}
    for idx, row in enumerate(rows, 1):
        name = row.get("name") or f"<row {idx}>"
        print_subsection(f"[{idx}/{len(rows)}] {name}")
        try:
            expires_on = resolve_expiry(row.get("expireson") or None, now=now)
            create_exemption(
                row.get("name", ""),
                row.get("policyassignmentid", ""),
                row.get("scope", ""),
                category=row.get("category") or DEFAULT_CATEGORY,
                expires_on=expires_on,
                display_name=row.get("displayname") or None,
                description=row.get("description") or None,
                reference_ids=_split_ids(row.get("policydefinitionreferenceids", "")) or None,
                exit_on_error=False,
            )
            results["succeeded"].append(name)
        except (ExemptionError, AzCliError) as e:
            print_error(f"Failed to create '{name}': {e}")
            results["failed"].append((name, str(e)))
    return results


def bulk_remove_from_csv(path: str) -> dict:
    """Remove one exemption per CSV row, continuing past failures."""
    rows = read_exemption_csv(path)
    print_info(f"Loaded {Colors.BOLD}{len(rows)}{Colors.RESET} row(s) from {path}")
    results = {"succeeded": [], "failed": []}
    for idx, row in enumerate(rows, 1):
        name = row.get("name") or f"<row {idx}>"
        print_subsection(f"[{idx}/{len(rows)}] {name}")
        try:
            remove_exemption(row.get("name", ""), row.get("scope", ""), exit_on_error=False)
            results["succeeded"].append(name)
        except (ExemptionError, AzCliError) as e:
            print_error(f"Failed to remove '{name}': {e}")
            results["failed"].append((name, str(e)))
    return results


def print_bulk_summary(results: dict, action: str):
    """Print succeeded/failed counts and each failed row with its error."""
    print_section("Summary", FILE_ICON)
    print_key_value(f"{action} successfully", str(len(results["succeeded"])))
    print_key_value("Failed", str(len(results["failed"])))
    for name, error in results["failed"]:
        print_detail(f"{CROSS} {name}: {error}")


# ══════════════════════════════════════════════════════════════
# Reporting
# ══════════════════════════════════════════════════════════════

def _field(record: dict, key: str, default=None):
    """Read a field from either the flat or the 'properties' response shape."""
    if key in record:
        return record[key]
    return (record.get("properties") or {}).get(key, default)


def scope_from_exemption_id(exemption_id: str) -> str:
    """Return the scope part of an exemption ID (everything before the provider segment)."""
    idx = (exemption_id or "").lower().find(EXEMPTION_ID_MARKER)
    return exemption_id[:idx] if idx >= 0 else ""


def list_exemptions(scope: Optional[str] = None) -> list:
    """List exemptions at a scope and its children (default: current subscription)."""
    args = ["policy", "exemption", "list", "--disable-scope-strict-match"]
    if scope:
        args += ["--scope", scope]
    return run_az_command(args) or []


def build_exemption_report(exemptions: list, now: Optional[datetime] = None,
                           warn_days: int = DEFAULT_WARN_DAYS) -> list:
    """
    Turn raw exemption records into report rows with an expiry status and
    days left, sorted most urgent first.
    """
    now = parse_timestamp(now) if now is not None else datetime.now(timezone.utc)
    far_future = datetime.max.replace(tzinfo=timezone.utc)
    keyed = []
    for record in exemptions:
        expiry = parse_timestamp(_field(record, "expiresOn"))
        assignment = _field(record, "policyAssignmentId", "") or ""
        status = classify_expiry(expiry, now, warn_days)
        keyed.append(((STATUS_ORDER.index(status), expiry or far_future, record.get("name", "")), {
            "name": record.get("name", ""),
            "display_name": _field(record, "displayName", "") or "",
            "status": status,
            "days_left": (expiry - now).days if expiry else "",
            "expires_on": expiry.strftime("%Y-%m-%d %H:%M") if expiry else "",
            "category": _field(record, "exemptionCategory", "") or "",
            "assignment": parse_resource_id(assignment)["name"] or assignment,
            "scope": scope_from_exemption_id(record.get("id", "")),
        }))
    keyed.sort(key=lambda item: item[0])
    return [row for _, row in keyed]


def print_exemption_report(rows: list, warn_days: int = DEFAULT_WARN_DAYS):
    """
    Print report rows as a table colored by status, then the totals per
    status and a warning for expired or soon-expiring exemptions.

    Args:
        rows:      Rows from build_exemption_report().
        warn_days: Window used for the expiring-soon warning text.
    """
    if not rows:
        print_info("No exemptions found.")
        return
    status_colors = {
        STATUS_EXPIRED: Colors.RED,
        STATUS_EXPIRING_SOON: Colors.YELLOW,
        STATUS_ACTIVE: Colors.GREEN,
        STATUS_NO_EXPIRY: Colors.DIM,
    }
    print_table(
        ["Name", "Status", "Expires", "Days", "Category"],
        [[r["name"], r["status"], r["expires_on"] or "-", r["days_left"], r["category"]] for r in rows],
        [26, 13, 16, 5, 9],
        row_colors=[status_colors[r["status"]] for r in rows],
    )
    counts = Counter(r["status"] for r in rows)
    print()
    print_key_value("Total", str(len(rows)))
    for status in STATUS_ORDER:
        print_key_value(status.title(), str(counts.get(status, 0)))
    if counts.get(STATUS_EXPIRED):
        print_warn(f"{counts[STATUS_EXPIRED]} exemption(s) have expired and no longer suppress evaluation.")
    if counts.get(STATUS_EXPIRING_SOON):
        print_warn(f"{counts[STATUS_EXPIRING_SOON]} exemption(s) expire within {warn_days} days.")


def write_report_csv(rows: list, path: str, fields: list):
    """
    Write dict rows to a CSV file with a header row.

    Args:
        rows:   Dicts to write (extra keys are ignored).
        path:   Output file path.
        fields: Column order.
    """
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fields, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)
    print_success(f"Report written to {path} ({len(rows)} row(s)).")


def compliance_report(assignment: Optional[str] = None,
                      resource_group: Optional[str] = None,
                      output_csv: Optional[str] = None,
                      top: int = 15) -> list:
    """
    List non-compliant policy states, print the policies with the most
    non-compliant resources and optionally export every state to CSV.
    """
    args = ["policy", "state", "list", "--filter", "complianceState eq 'NonCompliant'"]
    if assignment:
        args += ["--policy-assignment", assignment]
    if resource_group:
        args += ["--resource-group", resource_group]
    print_info("Querying non-compliant policy states (this may take a while)...")
    states = run_az_command(args) or []
    if not states:
        print_success("No non-compliant resources found.")
        return []

    print_warn(f"Found {Colors.BOLD}{len(states)}{Colors.RESET}{Colors.YELLOW} non-compliant policy state(s).{Colors.RESET}")
    counts = Counter(s.get("policyDefinitionReferenceId") or s.get("policyDefinitionName") or "?" for s in states)
    print_table(
        ["Policy", "Resources"],
        [[policy, count] for policy, count in counts.most_common(top)],
        [52, 9],
    )
    if len(counts) > top:
        print_detail(f"... and {len(counts) - top} more policies.")
    if output_csv:
        write_report_csv(states, output_csv, COMPLIANCE_FIELDS)
    return states


# ══════════════════════════════════════════════════════════════
# Main Entry Point
# ══════════════════════════════════════════════════════════════

def parse_metadata(pairs: Optional[list]) -> dict:
    """Turn KEY=VALUE strings into a dict, raising ExemptionError on malformed pairs."""
    metadata = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ExemptionError(f"Invalid metadata '{pair}'. Use key=value.")
        metadata[key.strip()] = value.strip()
    return metadata


def build_parser() -> argparse.ArgumentParser:
    """Build the parser; shared flags live on a parent parser used by every subcommand."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--subscription", help="Subscription name or ID to use.")
    common.add_argument("--verbose", "-v", action="store_true", help="Show each az command before it runs.")
    common.add_argument("--no-color", action="store_true", help="Disable colored output.")

    parser = argparse.ArgumentParser(
        description="Create, remove and report on Azure Policy exemptions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Waive a resource group for 90 days
  python manage_policy_exemptions.py create --name ex-legacy-rg --assignment <assignment-id> \\
      --resource-group rg-legacy --expires-in-days 90 --description "Legacy app, CHG-1234"

  # Mitigated exemption for two policies of an initiative on one resource
  python manage_policy_exemptions.py create --name ex-vm01 --assignment <assignment-id> \\
      --resource-id <vm-id> --category Mitigated --reference-ids ref1 ref2

  # Bulk operations from CSV
  python manage_policy_exemptions.py bulk-create --csv exemptions.csv
  python manage_policy_exemptions.py bulk-remove --csv exemptions.csv --yes

  # Reports
  python manage_policy_exemptions.py report --warn-days 14 --output-csv exemptions-report.csv
  python manage_policy_exemptions.py compliance-report --assignment nist-assignment --output-csv noncompliant.csv
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", parents=[common], help="Create a single exemption.")
    create.add_argument("--name", required=True, help="Unique exemption name.")
    create.add_argument("--assignment", required=True, help="Policy assignment resource ID.")
    target = create.add_mutually_exclusive_group()
    target.add_argument("--scope", help="Explicit scope path.")
    target.add_argument("--resource-group", help="Resource group in the current subscription.")
    target.add_argument("--resource-id", help="Full resource ID.")
    create.add_argument("--category", default=DEFAULT_CATEGORY, choices=EXEMPTION_CATEGORIES,
                        help=f"Exemption category (default: {DEFAULT_CATEGORY}).")
    expiry = create.add_mutually_exclusive_group()
    expiry.add_argument("--expires-on", help="Expiry date/time (ISO-8601, UTC).")
    expiry.add_argument("--expires-in-days", type=int, help="Expire this many days from now.")
    create.add_argument("--reference-ids", nargs="+", help="Only exempt these policyDefinitionReferenceIds.")
    create.add_argument("--display-name", help="Display name.")
    create.add_argument("--description", help="Justification text.")
    create.add_argument("--metadata", nargs="+", metavar="KEY=VALUE", help="Extra metadata pairs.")

    remove = sub.add_parser("remove", parents=[common], help="Remove a single exemption.")
    remove.add_argument("--name", required=True, help="Exemption name.")
    remove.add_argument("--scope", required=True, help="Scope the exemption was created at.")

    bulk_create = sub.add_parser("bulk-create", parents=[common], help="Create exemptions from a CSV file.")
    bulk_create.add_argument("--csv", required=True, help="CSV file with one exemption per row.")

    bulk_remove = sub.add_parser("bulk-remove", parents=[common], help="Remove exemptions listed in a CSV file.")
    bulk_remove.add_argument("--csv", required=True, help="CSV file with Name and Scope columns.")
    bulk_remove.add_argument("--yes", "-y", action="store_true", help="Skip the DELETE confirmation.")

    report = sub.add_parser("report", parents=[common], help="Report exemptions and their expiry status.")
    report.add_argument("--scope", help="Scope to report on (default: current subscription).")
    report.add_argument("--warn-days", type=int, default=DEFAULT_WARN_DAYS,
                        help=f"Flag exemptions expiring within this many days (default: {DEFAULT_WARN_DAYS}).")
    report.add_argument("--status", choices=STATUS_ORDER, help="Only show exemptions with this status.")
    report.add_argument("--output-csv", help="Also write the report to this CSV file.")

    compliance = sub.add_parser("compliance-report", parents=[common], help="Report non-compliant resources.")
    compliance.add_argument("--assignment", help="Policy assignment name to filter by.")
    compliance.add_argument("--resource-group", help="Resource group to filter by.")
    compliance.add_argument("--output-csv", help="Write all non-compliant states to this CSV file.")

    return parser


def run_create(args) -> int:
    """Handle the create subcommand, choosing the scope helper from the flags given."""
    subscription_id = None
    if not (args.scope or args.resource_id):
        subscription_id = get_current_subscription()["id"]
    options = {
        "category": args.category,
        "expires_on": resolve_expiry(args.expires_on, args.expires_in_days),
        "display_name": args.display_name,
        "description": args.description,
        "metadata": parse_metadata(args.metadata),
    }

    if args.reference_ids:
        if args.resource_id:
            scope = args.resource_id
        elif args.resource_group:
            scope = f"/subscriptions/{subscription_id}/resourceGroups/{args.resource_group}"
        else:
            scope = args.scope or f"/subscriptions/{subscription_id}"
        exempt_policy_references(scope, args.name, args.assignment, args.reference_ids, **options)
    elif args.resource_id:
        exempt_resource(args.resource_id, args.name, args.assignment, **options)
    elif args.resource_group:
        exempt_resource_group(subscription_id, args.resource_group, args.name, args.assignment, **options)
    elif args.scope:
        create_exemption(args.name, args.assignment, args.scope, **options)
    else:
        exempt_subscription(subscription_id, args.name, args.assignment, **options)
    print_completion_banner("Exemption created")
    return 0


def run_bulk_remove(args) -> int:
    """Handle bulk-remove; asks for DELETE unless --yes. Returns 1 if any row failed."""
    if not args.yes:
        print_box([
            "WARNING: every exemption listed in the CSV file will be deleted.",
            f"  File: {args.csv}",
            "  The affected resources will be evaluated for compliance again.",
        ], color=Colors.RED)
        print()
        if styled_input("Type 'DELETE' to confirm: ").strip() != "DELETE":
            print_skip("Operation cancelled. No exemptions were removed.")
            return 0
    results = bulk_remove_from_csv(args.csv)
    print_bulk_summary(results, "Removed")
    return 1 if results["failed"] else 0


def run_report(args) -> int:
    """Handle the report subcommand for the given scope or the current subscription."""
    scope = args.scope
    if not scope:
        scope = f"/subscriptions/{get_current_subscription()['id']}"
    print_info(f"Listing exemptions under {Colors.BOLD}{scope}{Colors.RESET}...")
    rows = build_exemption_report(list_exemptions(scope), warn_days=args.warn_days)
    if args.status:
        rows = [r for r in rows if r["status"] == args.status]
    print_exemption_report(rows, args.warn_days)
    if args.output_csv:
        write_report_csv(rows, args.output_csv, REPORT_FIELDS)
    return 0


def main(argv: Optional[list] = None) -> int:
    """
    Entry point. Parses arguments, checks prerequisites and runs the
    requested operation.

    Returns:
        Process exit code (0 on success, 1 on any handled failure).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.no_color:
        Colors.disable()
    azure_helpers.VERBOSE = args.verbose

    print_banner("Azure Policy Exemption Manager", "Time-bound policy exemptions and reporting")

    print_section("Authentication", KEY_ICON)
    ensure_az_installed()
    ensure_authenticated()
    if args.subscription:
        set_subscription(args.subscription)

    try:
        if args.command == "create":
            print_section("Create Exemption", SHIELD_ICON)
            return run_create(args)
        if args.command == "remove":
            print_section("Remove Exemption", TRASH_ICON)
            remove_exemption(args.name, args.scope)
            print_completion_banner("Exemption removed")
            return 0
        if args.command == "bulk-create":
            print_section("Bulk Create Exemptions", FILE_ICON)
            results = bulk_create_from_csv(args.csv)
            print_bulk_summary(results, "Created")
            return 1 if results["failed"] else 0
        if args.command == "bulk-remove":
            print_section("Bulk Remove Exemptions", TRASH_ICON)
            return run_bulk_remove(args)
        if args.command == "report":
            print_section("Exemption Report", CLOCK_ICON)
            return run_report(args)
        if args.command == "compliance-report":
            print_section("Compliance Report", SHIELD_ICON)
            compliance_report(args.assignment, args.resource_group, args.output_csv)
            return 0
    except (ExemptionError, OSError) as e:
        print_error(str(e))
        return 1
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
