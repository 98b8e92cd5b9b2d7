"""Gate evaluator.

Turns one stage's raw tool output into a Verdict using the declarative
policy ruleset:

1. Parse the output with the stage's configured parser
2. Evaluate declarative resource rules against planned resources
3. Apply severity overrides by rule identifier
4. Downgrade suppressed Blocking findings to Warning
5. De-duplicate and sort into a total order

The result depends only on the raw output and the ruleset, so identical
inputs always produce an identical Verdict.
"""

import logging
from typing import Any, Dict, List

from infragate.gates.models import (
    Finding,
    PolicyRuleset,
    ResourceRule,
    Severity,
    StageRuleset,
    Verdict,
)
from infragate.gates.parsers import ResourceParser, get_parser


logger = logging.getLogger(__name__)

_MISSING = object()


def _lookup(values: Dict[str, Any], path: str) -> Any:
    current: Any = values
    for part in path.split("."):
        if isinstance(current, list):
            if not current:
                return _MISSING
            current = current[0]
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _is_empty(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, (list, dict, str)) and len(value) == 0:
        return True
    return False


def evaluate_resource_rules(
    rules: List[ResourceRule],
    resources: List[Dict[str, Any]],
) -> List[Finding]:
    """Produce a finding for each resource violating a resource rule.

    Args:
        rules: Declarative rules from the stage ruleset.
        resources: Planned resources with "address", "type" and "values".

    Returns:
        Findings for every (rule, resource) violation.
    """
    findings = []
    for rule in rules:
        for resource in resources:
            if resource.get("type") != rule.resource_type:
                continue
            if not _is_empty(_lookup(resource.get("values") or {}, rule.attribute)):
                continue
            findings.append(
                Finding(
                    rule_id=rule.id,
                    severity=rule.severity,
                    resource=str(resource.get("address", "")),
                    message=rule.message
                    or f"{rule.resource_type} must set {rule.attribute}",
                )
            )
    return findings


class GateEvaluator:
    """Evaluates stage output against a policy ruleset.

    The evaluator holds no state; one instance may be shared across runs.

    Example:
        >>> evaluator = GateEvaluator()
        >>> verdict = evaluator.evaluate("security_scan", raw, ruleset)
        >>> verdict.passed
        False
    """

    def evaluate(
        self,
        stage: str,
        raw_output: bytes,
        ruleset: PolicyRuleset,
    ) -> Verdict:
        """Evaluate raw output of a stage.

        Args:
            stage: Stage name used to select the stage ruleset.
            raw_output: The tool's raw output.
            ruleset: Complete policy ruleset.

        Returns:
            Verdict with passed = no Blocking finding after suppression.

        Raises:
            ConfigurationError: If the parser is unknown or the output
                cannot be parsed.
        """
        if stage not in ruleset.stages:
            # No rules: the stage is judged by its exit code alone
            return Verdict(passed=True, findings=())

        rules = ruleset.for_stage(stage)
        parser = get_parser(rules.parser)

        findings = list(parser.parse_findings(raw_output))
        if rules.resource_rules:
            if isinstance(parser, ResourceParser):
                resources = parser.parse_resources(raw_output)
                findings.extend(
                    evaluate_resource_rules(list(rules.resource_rules), resources)
                )
            else:
                logger.warning(
                    "Resource rules ignored: parser exposes no resources",
                    extra={"stage": stage, "parser": rules.parser},
                )

        findings = [self._apply_rules(f, rules) for f in findings]
        ordered = sorted(set(findings), key=Finding.sort_key)
        passed = not any(f.severity == Severity.BLOCKING for f in ordered)

        logger.debug(
            "Gate evaluated",
            extra={
                "stage": stage,
                "passed": passed,
                "finding_count": len(ordered),
            },
        )
        return Verdict(passed=passed, findings=tuple(ordered))

    def _apply_rules(self, finding: Finding, rules: StageRuleset) -> Finding:
        override = rules.severity_overrides.get(finding.rule_id)
        if override is not None and override != finding.severity:
            finding = finding.model_copy(update={"severity": override})

        if finding.severity == Severity.BLOCKING:
            suppression = rules.suppression_for(finding)
            if suppression is not None:
                finding = finding.model_copy(
                    update={"severity": Severity.WARNING, "suppressed": True}
                )
        return finding
