"""Loading of the declarative policy ruleset from YAML.

Resource rules are evaluated against planned resources, so they belong on
a stage whose output is `terraform show -json` and whose parser is
terraform_plan.

Example ruleset file:

    version: 1
    stages:
      plan:
        parser: terraform_plan
        resource_rules:
          - id: s3.encryption
            resource_type: aws_s3_bucket
            attribute: server_side_encryption_configuration
            message: Buckets must enable server-side encryption
      security_scan:
        parser: checkov
        suppressions:
          - rule_id: CKV_AWS_18
            resource: aws_s3_bucket.logs
            reason: Access logging bucket cannot log to itself
      lint:
        parser: tflint
        advisory: true
        severity_overrides:
          terraform_unused_declarations: info
"""

import logging
from typing import Any, Dict

import yaml
from pydantic import ValidationError

from infragate.config import ConfigurationError
from infragate.gates.models import PolicyRuleset
from infragate.gates.parsers import PARSERS, ResourceParser


logger = logging.getLogger(__name__)


def parse_ruleset(data: Dict[str, Any], source: str = "ruleset") -> PolicyRuleset:
    """Validate a ruleset mapping.

    Raises:
        ConfigurationError: If the mapping is malformed or names a parser
            that is unknown or cannot serve its resource rules.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Ruleset must be a mapping", source=source)

    try:
        ruleset = PolicyRuleset.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid ruleset: {e}", source=source) from e

    for stage, rules in ruleset.stages.items():
        if rules.parser not in PARSERS:
            raise ConfigurationError(
                f"Stage '{stage}' uses unknown parser '{rules.parser}'",
                source=source,
            )
        if rules.resource_rules and not isinstance(
            PARSERS[rules.parser], ResourceParser
        ):
            raise ConfigurationError(
                f"Stage '{stage}' has resource rules but parser "
                f"'{rules.parser}' exposes no planned resources",
                source=source,
            )
    return ruleset


def load_ruleset(path: str) -> PolicyRuleset:
    """Load and validate a policy ruleset file.

    Args:
        path: Path to the YAML ruleset.

    Returns:
        The parsed PolicyRuleset.

    Raises:
        ConfigurationError: If the file is missing, not YAML, or invalid.
    """
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError("Ruleset file not found", source=path) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML: {e}", source=path) from e

    if not data:
        raise ConfigurationError("Ruleset file is empty", source=path)

    ruleset = parse_ruleset(data, source=path)
    logger.info(
        "Loaded policy ruleset",
        extra={"path": path, "stages": sorted(ruleset.stages)},
    )
    return ruleset
