"""
Workflow definitions and execution records.

A workflow is YAML with a ``name``, a ``version`` and a list of ``stages``.
Each stage is identified by its type key (``parallel``, ``sequence``,
``conditional``, ``loop``, ``error_handler``, ``transform``, ``merge``,
``split``) or, for tool calls, by a bare ``tool`` key:

    name: publish-report
    version: "1.0"
    stages:
      - tool: fetch_data
        params: {source: "$source"}
        output: data
      - parallel:
          - tool: render_html
            params: {rows: "$data.rows"}
          - tool: render_pdf
            params: {rows: "$data.rows"}
        output: documents
      - tool: upload
        params: {files: "$documents"}
        rollback: {tool: delete_upload, params: {files: "$documents"}}
        onError: retry
        retry: 2
"""

import uuid
from collections.abc import Mapping
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any, ClassVar, Union

import yaml
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from conductor.errors import WorkflowValidationError


class StageType(StrEnum):
    """Stage kinds, named by the key that identifies them in YAML."""

    TOOL = "tool"
    PARALLEL = "parallel"
    SEQUENCE = "sequence"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    ERROR_HANDLER = "error_handler"
    TRANSFORM = "transform"
    MERGE = "merge"
    SPLIT = "split"


class OnError(StrEnum):
    """Stage-level failure policy; unset means propagate."""

    CONTINUE = "continue"
    RETRY = "retry"


class TransformType(StrEnum):
    MAP = "map"
    FILTER = "filter"
    REDUCE = "reduce"
    CUSTOM = "custom"


class MergeType(StrEnum):
    CONCAT = "concat"
    OBJECT = "object"
    CUSTOM = "custom"


class SplitType(StrEnum):
    CHUNK = "chunk"
    CONDITION = "condition"


def _as_list(value: Any) -> Any:
    """Accept a single stage where a list of stages is expected."""
    return [value] if isinstance(value, Mapping | BaseModel) else value


class _Model(BaseModel):
    # keys a stage does not use (notes, editor metadata) are ignored
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StageBase(_Model):
    """Fields shared by every stage."""

    stage_type: ClassVar[StageType]

    name: str | None = None
    description: str | None = None
    output: str | None = None  # context key bound to the stage result
    on_error: OnError | None = Field(default=None, alias="onError")
    retry: int | None = Field(default=None, ge=1)  # attempts when onError is retry


class RollbackAction(_Model):
    """Compensating tool call registered by a successful tool stage."""

    tool: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class ToolStage(StageBase):
    stage_type = StageType.TOOL

    tool: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    rollback: RollbackAction | None = None
    timeout: float | None = Field(default=None, gt=0)


class ParallelStage(StageBase):
    stage_type = StageType.PARALLEL

    parallel: "StageList" = Field(min_length=1)


class SequenceStage(StageBase):
    stage_type = StageType.SEQUENCE

    sequence: "StageList" = Field(min_length=1)


class ConditionalSpec(_Model):
    condition: Any = Field(alias="if")
    then: "StageList" = Field(default_factory=list)
    otherwise: "StageList" = Field(default_factory=list, alias="else")


class ConditionalStage(StageBase):
    stage_type = StageType.CONDITIONAL

    conditional: ConditionalSpec


class LoopSpec(_Model):
    for_each: Any = Field(default=None, alias="forEach")
    item_var: str = Field(default="item", alias="itemVar")
    while_: Any = Field(default=None, alias="while")
    count: Any = None
    do: "StageList" = Field(min_length=1)
    max_iterations: int = Field(default=100, ge=1, alias="maxIterations")

    @model_validator(mode="after")
    def _one_mode(self) -> "LoopSpec":
        modes = [m for m in (self.for_each, self.while_, self.count) if m is not None]
        if len(modes) != 1:
            raise ValueError("loop needs exactly one of forEach, while or count")
        return self


class LoopStage(StageBase):
    stage_type = StageType.LOOP

    loop: LoopSpec


class ErrorHandlerSpec(_Model):
    try_: "StageList" = Field(alias="try", min_length=1)
    catch: "StageList | None" = None
    finally_: "StageList | None" = Field(default=None, alias="finally")


class ErrorHandlerStage(StageBase):
    stage_type = StageType.ERROR_HANDLER

    error_handler: ErrorHandlerSpec


class TransformSpec(_Model):
    input: Any = None
    type: TransformType
    expression: str | None = None
    condition: Any = None
    initial: Any = None
    function: str | None = None  # registered function name or expression over input/context

    @model_validator(mode="after")
    def _required_fields(self) -> "TransformSpec":
        if self.type in (TransformType.MAP, TransformType.REDUCE) and not self.expression:
            raise ValueError(f"{self.type} transform needs an expression")
        if self.type == TransformType.FILTER and self.condition is None:
            raise ValueError("filter transform needs a condition")
        if self.type == TransformType.CUSTOM and not self.function:
            raise ValueError("custom transform needs a function")
        return self


class TransformStage(StageBase):
    stage_type = StageType.TRANSFORM

    transform: TransformSpec


class MergeSpec(_Model):
    inputs: list[Any] = Field(min_length=1)
    type: MergeType = MergeType.CONCAT
    function: str | None = None

    @model_validator(mode="after")
    def _custom_needs_function(self) -> "MergeSpec":
        if self.type == MergeType.CUSTOM and not self.function:
            raise ValueError("custom merge needs a function")
        return self


class MergeStage(StageBase):
    stage_type = StageType.MERGE

    merge: MergeSpec


class SplitSpec(_Model):
    input: Any = None
    type: SplitType = SplitType.CHUNK
    size: int = Field(default=10, ge=1)
    condition: Any = None

    @model_validator(mode="after")
    def _condition_needs_condition(self) -> "SplitSpec":
        if self.type == SplitType.CONDITION and self.condition is None:
            raise ValueError("condition split needs a condition")
        return self


class SplitStage(StageBase):
    stage_type = StageType.SPLIT

    split: SplitSpec


_STAGE_KEYS = frozenset(t.value for t in StageType)


def detect_stage_type(raw: Any) -> str | None:
    """The first key of ``raw`` naming a stage type (a ``tool`` key means a tool stage)."""
    if isinstance(raw, StageBase):
        return raw.stage_type.value
    if isinstance(raw, Mapping):
        for key in raw:
            if key in _STAGE_KEYS:
                return key
    return None


Stage = Annotated[
    Union[
        Annotated[ToolStage, Tag(StageType.TOOL.value)],
        Annotated[ParallelStage, Tag(StageType.PARALLEL.value)],
        Annotated[SequenceStage, Tag(StageType.SEQUENCE.value)],
        Annotated[ConditionalStage, Tag(StageType.CONDITIONAL.value)],
        Annotated[LoopStage, Tag(StageType.LOOP.value)],
        Annotated[ErrorHandlerStage, Tag(StageType.ERROR_HANDLER.value)],
        Annotated[TransformStage, Tag(StageType.TRANSFORM.value)],
        Annotated[MergeStage, Tag(StageType.MERGE.value)],
        Annotated[SplitStage, Tag(StageType.SPLIT.value)],
    ],
    Discriminator(
        detect_stage_type,
        custom_error_type="invalid_stage",
        custom_error_message="Stage must contain a known stage type key or a 'tool' key",
    ),
]

StageList = Annotated[list[Stage], BeforeValidator(_as_list)]

for _model in (
    ParallelStage,
    SequenceStage,
    ConditionalSpec,
    ConditionalStage,
    LoopSpec,
    LoopStage,
    ErrorHandlerSpec,
    ErrorHandlerStage,
):
    _model.model_rebuild()

_STAGE_ADAPTER: TypeAdapter = TypeAdapter(Stage)


class WorkflowDefinition(_Model):
    """A named, versioned list of stages."""

    name: str = Field(min_length=1)
    version: str = "1.0.0"
    description: str = ""
    stages: list[Stage] = Field(min_length=1)

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_string(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int | float) else value


def validate_workflow(data: Any) -> WorkflowDefinition:
    """
    Validate a decoded workflow.

    Raises:
        WorkflowValidationError: Missing name, empty stages, or a malformed stage
    """
    if isinstance(data, WorkflowDefinition):
        return data
    if not isinstance(data, Mapping):
        raise WorkflowValidationError("Workflow definition must be a mapping")
    if not data.get("name"):
        raise WorkflowValidationError("Workflow must have a name")
    stages = data.get("stages")
    if not isinstance(stages, list) or not stages:
        raise WorkflowValidationError("Workflow must have a non-empty stages list")
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise WorkflowValidationError(f"Invalid workflow '{data['name']}': {e}") from e


def parse_stage(raw: Any) -> StageBase:
    """Validate a single stage mapping."""
    try:
        return _STAGE_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise WorkflowValidationError(f"Invalid stage: {e}") from e


def parse_workflow(text: str) -> WorkflowDefinition:
    """Parse and validate YAML workflow text."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise WorkflowValidationError(f"Failed to parse workflow: {e}") from e
    return validate_workflow(data)


def load_workflow(path: Path | str) -> WorkflowDefinition:
    """Read and validate a workflow YAML file."""
    return parse_workflow(Path(path).read_text(encoding="utf-8"))


# --- execution records ---


class ExecutionState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


class RollbackEntry(BaseModel):
    """A compensating call waiting on the rollback stack."""

    tool: str
    params: dict[str, Any] = Field(default_factory=dict)
    original_tool: str


class RollbackStepResult(BaseModel):
    """Outcome of one compensating call during rollback."""

    tool: str
    original_tool: str
    success: bool
    error: str | None = None


class WorkflowExecution(BaseModel):
    """Mutable state of one workflow run."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workflow: WorkflowDefinition
    state: ExecutionState = ExecutionState.PENDING
    context: dict[str, Any] = Field(default_factory=dict)
    results: list[Any] = Field(default_factory=list)
    rollback_stack: list[RollbackEntry] = Field(default_factory=list)
    rollback_report: list[RollbackStepResult] = Field(default_factory=list)
    current_stage_index: int = 0
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def duration(self) -> float:
        """Seconds between start and end (or now, while running)."""
        if self.started_at is None:
            return 0.0
        return ((self.ended_at or datetime.now()) - self.started_at).total_seconds()


class WorkflowResult(BaseModel):
    """What execute_workflow returns on success."""

    execution_id: str
    status: str = "success"
    results: list[Any] = Field(default_factory=list)
    duration: float = 0.0



