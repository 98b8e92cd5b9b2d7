"""Per-tool finding parsers.

Each external tool reports problems in its own grammar. A parser turns one
tool's raw output into the tool-agnostic Finding shape so the gate evaluator
never depends on a specific format.

Built-in parsers:
- json: Generic {"findings": [...]} document or bare list
- terraform_validate: `terraform validate -json` diagnostics
- tflint: `tflint --format json` issues and errors
- checkov: `checkov -o json` failed checks
- terraform_plan: `terraform show -json <plan>`; also exposes planned
  resources for declarative resource rules

Parsers raise ConfigurationError when output cannot be parsed, which is
treated as an operator mistake (wrong parser for the tool) and never
retried.
"""

import json
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from infragate.config import ConfigurationError
from infragate.gates.models import Finding, Severity


@runtime_checkable
class FindingParser(Protocol):
    """Protocol implemented by every tool output parser."""

    def parse_findings(self, raw: bytes) -> List[Finding]:
        """Parse raw tool output into findings."""
        ...


@runtime_checkable
class ResourceParser(Protocol):
    """Parser that can also expose planned resources."""

    def parse_resources(self, raw: bytes) -> List[Dict[str, Any]]:
        """Return planned resources as {"address", "type", "values"} dicts."""
        ...


_SEVERITY_ALIASES: Dict[str, Severity] = {
    "info": Severity.INFO,
    "notice": Severity.INFO,
    "low": Severity.INFO,
    "warning": Severity.WARNING,
    "warn": Severity.WARNING,
    "medium": Severity.WARNING,
    "error": Severity.BLOCKING,
    "blocking": Severity.BLOCKING,
    "high": Severity.BLOCKING,
    "critical": Severity.BLOCKING,
}


def normalize_severity(value: Optional[str], default: Severity) -> Severity:
    """Map a tool-specific severity label onto Severity."""
    if not value:
        return default
    return _SEVERITY_ALIASES.get(str(value).strip().lower(), default)


def _load(raw: bytes, parser_name: str) -> Any:
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Output is not valid JSON: {e}",
            source=f"parser:{parser_name}",
        ) from e


class JsonFindingsParser:
    """Parser for tools already emitting the generic finding shape.

    Accepts a list of finding objects or {"findings": [...]}. Each entry needs
    a rule_id; severity defaults to blocking.
    """

    name = "json"

    def parse_findings(self, raw: bytes) -> List[Finding]:
        document = _load(raw, self.name)
        if document is None:
            return []
        if isinstance(document, dict):
            document = document.get("findings", [])
        if not isinstance(document, list):
            raise ConfigurationError(
                "Expected a list of findings", source=f"parser:{self.name}"
            )

        findings = []
        for entry in document:
            if not isinstance(entry, dict) or not entry.get("rule_id"):
                raise ConfigurationError(
                    f"Malformed finding entry: {entry!r}",
                    source=f"parser:{self.name}",
                )
            findings.append(
                Finding(
                    rule_id=str(entry["rule_id"]),
                    severity=normalize_severity(
                        entry.get("severity"), Severity.BLOCKING
                    ),
                    resource=str(entry.get("resource") or ""),
                    message=str(entry.get("message") or ""),
                )
            )
        return findings


class TerraformValidateParser:
    """Parser for `terraform validate -json` output."""

    name = "terraform_validate"

    def parse_findings(self, raw: bytes) -> List[Finding]:
        document = _load(raw, self.name)
        if document is None:
            return []

        findings = []
        for diagnostic in document.get("diagnostics", []):
            summary = diagnostic.get("summary", "")
            detail = diagnostic.get("detail", "")
            range_info = diagnostic.get("range") or {}
            address = diagnostic.get("address") or range_info.get("filename", "")
            findings.append(
                Finding(
                    rule_id=f"terraform.{_slug(summary) or 'diagnostic'}",
                    severity=normalize_severity(
                        diagnostic.get("severity"), Severity.BLOCKING
                    ),
                    resource=str(address),
                    message=f"{summary}: {detail}" if detail else summary,
                )
            )
        return findings


class TflintParser:
    """Parser for `tflint --format json` output."""

    name = "tflint"

    def parse_findings(self, raw: bytes) -> List[Finding]:
        document = _load(raw, self.name)
        if document is None:
            return []

        findings = []
        for issue in document.get("issues", []):
            rule = issue.get("rule") or {}
            range_info = issue.get("range") or {}
            start = range_info.get("start") or {}
            location = range_info.get("filename", "")
            if location and start.get("line"):
                location = f"{location}:{start['line']}"
            findings.append(
                Finding(
                    rule_id=str(rule.get("name") or "tflint.issue"),
                    severity=normalize_severity(
                        rule.get("severity"), Severity.WARNING
                    ),
                    resource=location,
                    message=str(issue.get("message") or ""),
                )
            )
        for error in document.get("errors", []):
            findings.append(
                Finding(
                    rule_id="tflint.error",
                    severity=Severity.BLOCKING,
                    resource=str((error.get("range") or {}).get("filename", "")),
                    message=str(error.get("message") or ""),
                )
            )
        return findings


class CheckovParser:
    """Parser for `checkov -o json` output.

    Checkov prints one report object per framework, or a list of them when
    several frameworks ran. Only failed checks become findings.
    """

    name = "checkov"

    def parse_findings(self, raw: bytes) -> List[Finding]:
        document = _load(raw, self.name)
        if document is None:
            return []
        reports = document if isinstance(document, list) else [document]

        findings = []
        for report in reports:
            results = report.get("results") or {}
            for check in results.get("failed_checks", []):
                findings.append(
                    Finding(
                        rule_id=str(check.get("check_id") or "checkov.check"),
                        severity=normalize_severity(
                            check.get("severity"), Severity.BLOCKING
                        ),
                        resource=str(check.get("resource") or ""),
                        message=str(check.get("check_name") or ""),
                    )
                )
        return findings


class TerraformPlanParser:
    """Parser for `terraform show -json` plan output.

    The plan itself carries no findings beyond errored resource changes;
    its value for gating is the list of planned resources that declarative
    resource rules are evaluated against.
    """

    name = "terraform_plan"

    def parse_findings(self, raw: bytes) -> List[Finding]:
        document = _load(raw, self.name)
        if document is None:
            return []

        findings = []
        if document.get("errored"):
            findings.append(
                Finding(
                    rule_id="terraform.plan_errored",
                    severity=Severity.BLOCKING,
                    message="Plan reported errored state",
                )
            )
        return findings

    def parse_resources(self, raw: bytes) -> List[Dict[str, Any]]:
        document = _load(raw, self.name)
        if document is None:
            return []

        resources = []
        for change in document.get("resource_changes", []):
            actions = (change.get("change") or {}).get("actions", [])
            if actions == ["delete"] or actions == ["no-op"]:
                continue
            resources.append(
                {
                    "address": change.get("address", ""),
                    "type": change.get("type", ""),
                    "values": (change.get("change") or {}).get("after") or {},
                }
            )
        return resources


def _slug(text: str) -> str:
    return "_".join(
        "".join(c if c.isalnum() else " " for c in text.lower()).split()
    )


PARSERS: Dict[str, FindingParser] = {
    JsonFindingsParser.name: JsonFindingsParser(),
    TerraformValidateParser.name: TerraformValidateParser(),
    TflintParser.name: TflintParser(),
    CheckovParser.name: CheckovParser(),
    TerraformPlanParser.name: TerraformPlanParser(),
}


def get_parser(name: str) -> FindingParser:
    """Look up a parser by name.

    Raises:
        ConfigurationError: If no parser is registered under the name.
    """
    try:
        return PARSERS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown finding parser '{name}'",
            source="ruleset",
        ) from None
