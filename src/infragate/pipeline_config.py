"""Declarative pipeline definition.

The pipeline definition names the external tool behind each stage. Stage
order is fixed by the engine; the definition only supplies adapters and
their per-stage options.

Example definition file:

    approval_required: true
    stages:
      validate:
        command: ["terraform", "validate", "-json"]
        working_dir: /workspace/network
      lint:
        command: ["tflint", "--format", "json"]
        advisory: true
      security_scan:
        command: ["checkov", "-d", ".", "-o", "json"]
      plan:
        command: ["sh", "-c", "terraform plan -out={output_file} >/dev/null && terraform show -json {output_file}"]
        output_file: plan.tfplan
        timeout_seconds: 1800
      apply:
        command: ["terraform", "apply", "-auto-approve", "{input_plan}"]
    reconcile:
      command: ["terraform", "plan", "-detailed-exitcode", "-input=false"]
"""

import logging
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from infragate.config import ConfigurationError
from infragate.executor.adapters import StageAdapter, SubprocessAdapter
from infragate.state.models import StageName


logger = logging.getLogger(__name__)

EXECUTABLE_STAGES = (
    StageName.VALIDATE,
    StageName.LINT,
    StageName.SECURITY_SCAN,
    StageName.PLAN,
    StageName.APPLY,
)


class StageConfig(BaseModel):
    """Adapter configuration for one stage.

    Attributes:
        command: Command template, executable first.
        env: Extra environment variables.
        working_dir: Working directory for the tool.
        output_file: File the tool writes its artifact to.
        timeout_seconds: Overrides the default stage timeout.
        advisory: Record findings without halting the run.
    """

    command: List[str] = Field(..., min_length=1)
    env: Dict[str, str] = Field(default_factory=dict)
    working_dir: Optional[str] = None
    output_file: Optional[str] = None
    timeout_seconds: Optional[int] = Field(default=None, ge=1)
    advisory: bool = False

    def build_adapter(self) -> SubprocessAdapter:
        return SubprocessAdapter(
            command=self.command,
            env=self.env,
            working_dir=self.working_dir,
            output_file=self.output_file,
        )


class PipelineDefinition(BaseModel):
    """Adapters and options for the fixed stage sequence.

    Attributes:
        approval_required: Overrides INFRAGATE_APPROVAL_REQUIRED when set.
        stages: Configuration per executable stage.
        reconcile: Detailed exit code plan used to reconcile applies.
    """

    approval_required: Optional[bool] = None
    stages: Dict[StageName, StageConfig] = Field(default_factory=dict)
    reconcile: Optional[StageConfig] = None

    @field_validator("stages")
    @classmethod
    def validate_stages(
        cls, v: Dict[StageName, StageConfig]
    ) -> Dict[StageName, StageConfig]:
        """Validate stage names and per-stage options."""
        if StageName.APPROVAL in v:
            raise ValueError("approval is not an executable stage")
        apply = v.get(StageName.APPLY)
        if apply is not None and apply.advisory:
            raise ValueError("apply cannot be advisory")
        missing = [s.value for s in EXECUTABLE_STAGES if s not in v]
        if missing:
            raise ValueError(f"missing stages: {', '.join(missing)}")
        return v

    def timeout_for(self, stage: StageName, default: float) -> float:
        config = self.stages.get(stage)
        if config is not None and config.timeout_seconds is not None:
            return float(config.timeout_seconds)
        return default

    def is_advisory(self, stage: StageName) -> bool:
        config = self.stages.get(stage)
        return config is not None and config.advisory

    def build_adapters(self) -> Dict[StageName, StageAdapter]:
        """Create a subprocess adapter for every configured stage."""
        return {
            stage: config.build_adapter() for stage, config in self.stages.items()
        }


def load_pipeline_definition(path: str) -> PipelineDefinition:
    """Load and validate a pipeline definition file.

    Raises:
        ConfigurationError: If the file is missing, not YAML, or invalid.
    """
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(
            "Pipeline definition not found", source=path
        ) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML: {e}", source=path) from e

    if not data:
        raise ConfigurationError("Pipeline definition is empty", source=path)
    if not isinstance(data, dict):
        raise ConfigurationError(
            "Pipeline definition must be a mapping", source=path
        )

    try:
        definition = PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid pipeline definition: {e}", source=path
        ) from e

    logger.info(
        "Loaded pipeline definition",
        extra={
            "path": path,
            "stages": [stage.value for stage in definition.stages],
            "reconcile": definition.reconcile is not None,
        },
    )
    return definition
