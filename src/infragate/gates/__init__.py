"""Policy gates: findings, verdicts, rulesets and per-tool parsers."""

from infragate.gates.evaluator import GateEvaluator, evaluate_resource_rules
from infragate.gates.models import (
    Finding,
    PolicyRuleset,
    ResourceRule,
    Severity,
    StageRuleset,
    SuppressionRule,
    Verdict,
)
from infragate.gates.parsers import (
    PARSERS,
    CheckovParser,
    FindingParser,
    JsonFindingsParser,
    TerraformPlanParser,
    TerraformValidateParser,
    TflintParser,
    get_parser,
)
from infragate.gates.ruleset import load_ruleset, parse_ruleset

__all__ = [
    "Finding",
    "Severity",
    "Verdict",
    "SuppressionRule",
    "ResourceRule",
    "StageRuleset",
    "PolicyRuleset",
    "GateEvaluator",
    "evaluate_resource_rules",
    "FindingParser",
    "JsonFindingsParser",
    "TerraformValidateParser",
    "TflintParser",
    "CheckovParser",
    "TerraformPlanParser",
    "PARSERS",
    "get_parser",
    "load_ruleset",
    "parse_ruleset",
]
