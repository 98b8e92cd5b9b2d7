"""Policy gate models.

This module defines the data models shared by the gate evaluator, the
per-tool finding parsers and the pipeline state:
- Severity: Finding severity with a total order
- Finding: One policy violation or warning surfaced by a gate
- Verdict: Pass/fail decision plus the findings it was derived from
- SuppressionRule, ResourceRule, StageRuleset, PolicyRuleset: The
  declarative policy ruleset

Findings and verdicts are frozen so that a verdict recorded in a run's audit
trail cannot be altered after evaluation.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """Severity of a finding.

    Attributes:
        INFO: Informational only.
        WARNING: Recorded, never halts the pipeline.
        BLOCKING: Fails the stage unless suppressed.
    """

    INFO = "info"
    WARNING = "warning"
    BLOCKING = "blocking"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: Dict[Severity, int] = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.BLOCKING: 2,
}


class Finding(BaseModel):
    """One policy violation or warning surfaced by a gate.

    Attributes:
        rule_id: Identifier of the rule or check that produced the finding.
        severity: Severity after ruleset overrides and suppressions.
        resource: Reference to the offending resource (e.g. "aws_s3_bucket.logs").
        message: Human-readable description.
        suppressed: True when the ruleset downgraded a Blocking finding.
    """

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(..., min_length=1)
    severity: Severity
    resource: str = ""
    message: str = ""
    suppressed: bool = False

    def sort_key(self) -> Tuple[int, str, str, str, bool]:
        """Total order used to make verdicts deterministic."""
        return (
            -self.severity.rank,
            self.rule_id,
            self.resource,
            self.message,
            self.suppressed,
        )


class Verdict(BaseModel):
    """Outcome of evaluating one stage's output against the ruleset.

    Attributes:
        passed: True when no Blocking finding remains.
        findings: Findings in deterministic order.
    """

    model_config = ConfigDict(frozen=True)

    passed: bool
    findings: Tuple[Finding, ...] = ()

    @property
    def blocking(self) -> List[Finding]:
        """Findings that caused the verdict to fail."""
        return [f for f in self.findings if f.severity == Severity.BLOCKING]


class SuppressionRule(BaseModel):
    """Downgrades a Blocking finding to Warning for one rule and resource.

    Attributes:
        rule_id: Rule identifier the suppression applies to.
        resource: Resource reference, or "*" for every resource.
        reason: Why the finding is accepted, kept for audit.
    """

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(..., min_length=1)
    resource: str = Field(..., min_length=1)
    reason: str = ""

    def matches(self, finding: Finding) -> bool:
        """Check whether this suppression applies to a finding."""
        if finding.rule_id != self.rule_id:
            return False
        return self.resource == "*" or self.resource == finding.resource


class ResourceRule(BaseModel):
    """Declarative rule requiring an attribute on planned resources.

    Evaluated against the resources a parser exposes (for example the
    resource changes of a Terraform plan). A resource of the given type
    whose attribute path is missing, null or empty yields a finding.

    Attributes:
        id: Rule identifier reported on findings.
        resource_type: Resource type to match (e.g. "aws_s3_bucket").
        attribute: Dotted attribute path that must be present.
        severity: Severity of the finding produced on violation.
        message: Human-readable description of the violation.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    resource_type: str = Field(..., min_length=1)
    attribute: str = Field(..., min_length=1)
    severity: Severity = Severity.BLOCKING
    message: str = ""


class StageRuleset(BaseModel):
    """Policy rules for one stage.

    Attributes:
        parser: Name of the finding parser for the stage's tool output.
        advisory: When True the stage records findings without halting.
        severity_overrides: Severity to force per rule identifier.
        suppressions: Blocking findings accepted as warnings.
        resource_rules: Declarative rules over planned resources.
    """

    model_config = ConfigDict(frozen=True)

    parser: str = "json"
    advisory: bool = False
    severity_overrides: Dict[str, Severity] = Field(default_factory=dict)
    suppressions: Tuple[SuppressionRule, ...] = ()
    resource_rules: Tuple[ResourceRule, ...] = ()

    def suppression_for(self, finding: Finding) -> Optional[SuppressionRule]:
        """Return the first suppression matching the finding, if any."""
        for rule in self.suppressions:
            if rule.matches(finding):
                return rule
        return None


class PolicyRuleset(BaseModel):
    """Complete policy ruleset, keyed by stage name.

    Attributes:
        version: Ruleset schema version.
        stages: Per-stage rules; stages without an entry use defaults.
    """

    model_config = ConfigDict(frozen=True)

    version: int = 1
    stages: Dict[str, StageRuleset] = Field(default_factory=dict)

    def for_stage(self, stage: str) -> StageRuleset:
        """Return the rules for a stage, or the default rules."""
        return self.stages.get(stage, StageRuleset())
