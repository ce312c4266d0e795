#!/usr/bin/env python3
"""
Custom Policy Initiative Deployer
=================================
Clones a built-in regulatory-compliance policy initiative (e.g. NIST SP
800-53, ISO 27001, CIS) into a custom policy set definition that can be
versioned and edited independently of the built-in one.

Workflow:
  1. (optional) Export a built-in initiative to a local JSON file
  2. Validate the JSON file and extract its policy definition references
  3. Create the custom initiative, or update it if it already exists
  4. Print the manual commands for assignment and compliance scanning

Nothing is assigned and no compliance data is read by this script.

Usage:
  python deploy_custom_initiative.py --list-builtin
  python deploy_custom_initiative.py --export-builtin <builtin-name> --file nist.json
  python deploy_custom_initiative.py --file nist.json --name custom-nist
  python deploy_custom_initiative.py --file nist.json --management-group my-mg
"""

import argparse
import json
import os
import re
import sys
from typing import Optional

import azure_helpers
from azure_helpers import (
    AzCliError,
    Colors,
    ARROW,
    FILE_ICON,
    GEAR_ICON,
    KEY_ICON,
    SHIELD_ICON,
    ensure_authenticated,
    ensure_az_installed,
    get_current_subscription,
    print_banner,
    print_box,
    print_completion_banner,
    print_detail,
    print_error,
    print_info,
    print_key_value,
    print_section,
    print_success,
    print_table,
    print_warn,
    remove_temp_files,
    run_az_command,
    set_subscription,
    write_temp_json,
)


DEFAULT_CATEGORY = "Regulatory Compliance"
DEFAULT_VERSION = "1.0.0"
DISPLAY_NAME_PREFIX = "Custom - "
# Azure limits policy set definition names to 64 characters.
MAX_NAME_LENGTH = 64
NOT_FOUND_MARKERS = ("NotFound", "could not be found", "was not found")


class PolicyDocumentError(ValueError):
    """The policy set JSON document is missing or malformed."""


# ══════════════════════════════════════════════════════════════
# Policy Set Document
# Accepts both the ARM export shape ({"properties": {...}}) and
# the flat shape printed by 'az policy set-definition show'.
# ══════════════════════════════════════════════════════════════

def load_policy_set_document(path: str) -> dict:
    """
    Read and validate a policy set definition document.

    Args:
        path: Path to the JSON file.

    Returns:
        The properties view of the document, with 'name' and 'id' of the
        source carried over when present.

    Raises:
        PolicyDocumentError: If the file does not exist, cannot be read,
            is not UTF-8, is not valid JSON, or lacks a non-empty
            policyDefinitions list.
    """
    if not os.path.isfile(path):
        raise PolicyDocumentError(f"Policy set file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            document = json.load(f)
    except json.JSONDecodeError as e:
        raise PolicyDocumentError(f"Invalid JSON in '{path}': {e}") from e
    except UnicodeDecodeError as e:
        raise PolicyDocumentError(f"'{path}' is not UTF-8 encoded (re-save it as UTF-8): {e}") from e
    except OSError as e:
        raise PolicyDocumentError(f"Cannot read '{path}': {e}") from e

    if not isinstance(document, dict):
        raise PolicyDocumentError("Policy set document must be a JSON object.")

    properties = document.get("properties")
    if not isinstance(properties, dict):
        properties = document
    properties = dict(properties)

    definitions = properties.get("policyDefinitions")
    if not isinstance(definitions, list) or not definitions:
        raise PolicyDocumentError("Document has no policy definitions (properties.policyDefinitions is empty or missing).")
    for idx, ref in enumerate(definitions):
        if not isinstance(ref, dict) or not ref.get("policyDefinitionId"):
            raise PolicyDocumentError(f"policyDefinitions[{idx}] has no policyDefinitionId.")

    properties.setdefault("sourceName", document.get("name", ""))
    properties.setdefault("sourceId", document.get("id", ""))
    return properties


def slugify_name(display_name: str) -> str:
    """Turn a display name into a valid policy set definition name."""
    slug = re.sub(r"[^a-z0-9]+", "-", display_name.lower()).strip("-")
    return slug[:MAX_NAME_LENGTH].rstrip("-") or "custom-initiative"


def build_custom_initiative(source: dict, name: Optional[str] = None,
                            display_name: Optional[str] = None,
                            description: Optional[str] = None,
                            category: str = DEFAULT_CATEGORY,
                            version: str = DEFAULT_VERSION) -> dict:
    """
    Build the request body for the custom initiative from a validated
    source document. Definition references, groups and parameters are
    passed through unchanged.

    Returns:
        Dict with keys: name, display_name, description, metadata,
        definitions, definition_groups, parameters.
    """
    source_display = source.get("displayName") or source.get("sourceName") or "Policy Initiative"
    display_name = display_name or f"{DISPLAY_NAME_PREFIX}{source_display}"
    metadata = {"category": category, "version": version}
    if source.get("sourceId") or source.get("sourceName"):
        metadata["source"] = source.get("sourceId") or source.get("sourceName")

    return {
        "name": name or slugify_name(display_name),
        "display_name": display_name,
        "description": description or source.get("description") or f"Custom copy of '{source_display}'.",
        "metadata": metadata,
        "definitions": source["policyDefinitions"],
        "definition_groups": source.get("policyDefinitionGroups") or [],
        "parameters": source.get("parameters") or {},
    }


def build_set_definition_args(initiative: dict, definitions_file: str,
                              groups_file: Optional[str] = None,
                              params_file: Optional[str] = None,
                              management_group: Optional[str] = None,
                              subscription: Optional[str] = None,
                              update: bool = False) -> list:
    """
    Build the 'az policy set-definition create|update' argument list.
    JSON payloads are passed by file path to avoid shell quoting issues.
    """
    args = [
        "policy", "set-definition", "update" if update else "create",
        "--name", initiative["name"],
        "--display-name", initiative["display_name"],
        "--description", initiative["description"],
        "--definitions", definitions_file,
    ]
    if groups_file:
        args += ["--definition-groups", groups_file]
    if params_file:
        args += ["--params", params_file]
    args += ["--metadata"] + [f"{k}={v}" for k, v in initiative["metadata"].items()]
    if management_group:
        args += ["--management-group", management_group]
    elif subscription:
        args += ["--subscription", subscription]
    return args


def initiative_exists(name: str, management_group: Optional[str] = None) -> bool:
    """
    Check whether a custom policy set definition with this name exists.

    Args:
        name:             Policy set definition name.
        management_group: Look at this management group instead of the
                          current subscription.

    Returns:
        True if found, False if Azure reports it as not found. Any other
        az failure (permissions, network) is printed and exits.
    """
    args = ["policy", "set-definition", "show", "--name", name]
    if management_group:
        args += ["--management-group", management_group]
    try:
        return bool(run_az_command(args, exit_on_error=False))
    except AzCliError as e:
        if any(marker in str(e) for marker in NOT_FOUND_MARKERS):
            return False
        print_error(f"Could not check for existing initiative '{name}'.")
        print_detail(str(e))
        sys.exit(1)


def deploy_initiative(initiative: dict, management_group: Optional[str] = None,
                      subscription: Optional[str] = None) -> dict:
    """
    Create the custom initiative, or update it if a definition with the
    same name already exists at the target scope.

    Returns:
        The set definition returned by Azure.
    """
    update = initiative_exists(initiative["name"], management_group)
    if update:
        print_warn(f"Initiative '{initiative['name']}' already exists. Updating it in place.")

    temp_files = []
    try:
        definitions_file = write_temp_json(initiative["definitions"], "initiative-defs-")
        temp_files.append(definitions_file)
        groups_file = None
        if initiative["definition_groups"]:
            groups_file = write_temp_json(initiative["definition_groups"], "initiative-groups-")
            temp_files.append(groups_file)
        params_file = None
        if initiative["parameters"]:
            params_file = write_temp_json(initiative["parameters"], "initiative-params-")
            temp_files.append(params_file)

        args = build_set_definition_args(
            initiative, definitions_file, groups_file, params_file,
            management_group=management_group, subscription=subscription, update=update,
        )
        print_info(f"{'Updating' if update else 'Creating'} policy set definition "
                   f"'{Colors.BOLD}{initiative['name']}{Colors.RESET}'...")
        result = run_az_command(args) or {}
    finally:
        remove_temp_files(temp_files)

    print_success(f"Initiative '{initiative['display_name']}' {'updated' if update else 'created'}.")
    if result.get("id"):
        print_detail(f"ID: {result['id']}")
    return result


# ══════════════════════════════════════════════════════════════
# Built-in Initiatives
# ══════════════════════════════════════════════════════════════

def list_regulatory_initiatives(category: str = DEFAULT_CATEGORY) -> list:
    """Print built-in initiatives in the given category and return them."""
    print_info(f"Retrieving built-in '{category}' initiatives...")
    query = (f"[?policyType=='BuiltIn' && metadata.category=='{category}']"
             ".{name:name, displayName:displayName, version:metadata.version}")
    initiatives = run_az_command(["policy", "set-definition", "list", "--query", query]) or []
    initiatives = sorted(initiatives, key=lambda i: (i.get("displayName") or "").lower())
    if not initiatives:
        print_warn("No built-in initiatives found in that category.")
        return []
    print_table(
        ["Name", "Display Name", "Version"],
        [[i.get("name"), i.get("displayName"), i.get("version") or ""] for i in initiatives],
        [36, 26, 8],
    )
    print_success(f"Found {len(initiatives)} initiative(s).")
    return initiatives


def export_builtin_initiative(name: str, path: str) -> dict:
    """
    Fetch a built-in policy set definition and save it in ARM export shape,
    ready to be edited and passed back through --file.
    """
    print_info(f"Exporting built-in initiative '{Colors.BOLD}{name}{Colors.RESET}'...")
    definition = run_az_command(["policy", "set-definition", "show", "--name", name])
    if not definition:
        raise PolicyDocumentError(f"Built-in initiative '{name}' returned no data.")
    properties = {k: v for k, v in definition.items() if k not in ("id", "name", "type", "systemData")}
    document = {
        "id": definition.get("id", ""),
        "name": definition.get("name", name),
        "properties": properties,
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2)
    count = len(properties.get("policyDefinitions") or [])
    print_success(f"Saved '{definition.get('displayName', name)}' ({count} policies) to {path}")
    return document


def print_next_steps(initiative: dict, deployed: dict, management_group: Optional[str] = None):
    """Print the manual follow-up commands for assignment and scanning."""
    set_id = deployed.get("id") or initiative["name"]
    scope = (f"/providers/Microsoft.Management/managementGroups/{management_group}"
             if management_group else "/subscriptions/<subscription-id>")
    print_section("Next Steps", ARROW)
    print_box([
        "1. Assign the initiative to a scope:",
        f"   az policy assignment create --name {initiative['name'][:24]}"
        f" --policy-set-definition {set_id} --scope {scope}",
        "",
        "2. Trigger a compliance evaluation (optional, otherwise ~24h):",
        "   az policy state trigger-scan",
        "",
        "3. Review compliance once the scan finishes:",
        "   az policy state summarize --policy-set-definition " + initiative["name"],
    ])


# ══════════════════════════════════════════════════════════════
# Main Entry Point
# ══════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser, with usage examples in the epilog."""
    parser = argparse.ArgumentParser(
        description="Clone a built-in regulatory compliance initiative into a custom Azure Policy initiative.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List built-in regulatory compliance initiatives
  python deploy_custom_initiative.py --list-builtin

  # Export a built-in initiative to a file you can edit
  python deploy_custom_initiative.py --export-builtin 179d1daa-458f-4e47-8086-2a68d0d6c38f --file nist.json

  # Deploy the (edited) file as a custom initiative in the current subscription
  python deploy_custom_initiative.py --file nist.json --name custom-nist-800-53 --version 1.1.0

  # Deploy at management group scope
  python deploy_custom_initiative.py --file nist.json --management-group contoso-root
        """,
    )
    parser.add_argument("--file", "-f", help="Policy set definition JSON file.")
    parser.add_argument("--name", help="Custom initiative name (default: derived from display name).")
    parser.add_argument("--display-name", help=f"Display name (default: '{DISPLAY_NAME_PREFIX}<source display name>').")
    parser.add_argument("--description", help="Description (default: source description).")
    parser.add_argument("--category", default=DEFAULT_CATEGORY, help=f"Metadata category (default: {DEFAULT_CATEGORY}).")
    parser.add_argument("--version", default=DEFAULT_VERSION, help=f"Metadata version (default: {DEFAULT_VERSION}).")
    parser.add_argument("--management-group", help="Deploy at this management group instead of the subscription.")
    parser.add_argument("--subscription", help="Subscription name or ID to use.")
    parser.add_argument("--list-builtin", action="store_true", help="List built-in initiatives in --category and exit.")
    parser.add_argument("--export-builtin", metavar="NAME", help="Export this built-in initiative to --file and exit.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show each az command before it runs.")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output.")
    return parser


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

    print_banner("Custom Policy Initiative Deployer", "Clone a regulatory compliance initiative")

    if not (args.list_builtin or args.file):
        print_error("--file is required unless --list-builtin is used.")
        return 1
    if args.export_builtin and not args.file:
        print_error("--export-builtin requires --file for the output path.")
        return 1

    print_section("Authentication", KEY_ICON)
    ensure_az_installed()
    ensure_authenticated()
    if args.subscription:
        set_subscription(args.subscription)
    get_current_subscription()

    try:
        if args.list_builtin:
            print_section("Built-in Initiatives", SHIELD_ICON)
            list_regulatory_initiatives(args.category)
            return 0

        if args.export_builtin:
            print_section("Export Built-in Initiative", FILE_ICON)
            export_builtin_initiative(args.export_builtin, args.file)
            print_info(f"Edit the file if needed, then run with {Colors.BOLD}--file {args.file}{Colors.RESET} to deploy.")
            return 0

        print_section("Source Document", FILE_ICON)
        source = load_policy_set_document(args.file)
        initiative = build_custom_initiative(
            source, name=args.name, display_name=args.display_name,
            description=args.description, category=args.category, version=args.version,
        )
    except (PolicyDocumentError, OSError) as e:
        print_error(str(e))
        return 1

    print_key_value("Source", source.get("displayName") or source.get("sourceName") or args.file)
    print_key_value("Policies", str(len(initiative["definitions"])))
    print_key_value("Groups", str(len(initiative["definition_groups"])))
    print_key_value("Parameters", str(len(initiative["parameters"])))
    print_key_value("Target name", initiative["name"])
    print_key_value("Display name", initiative["display_name"])
    print_key_value("Scope", f"management group '{args.management_group}'" if args.management_group else "subscription")

    print_section("Deploying Initiative", GEAR_ICON)
    deployed = deploy_initiative(initiative, args.management_group, args.subscription)

    print_next_steps(initiative, deployed, args.management_group)
    print_completion_banner("Custom initiative deployed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
