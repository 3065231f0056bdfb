"""Pydantic models defining automations, their operations and the persisted record."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

ParameterType = Literal["string", "number", "boolean", "object", "array", "file"]

ValueSource = Literal[
    "manual",
    "automation_input",
    "previous_operation",
    "operation_output",
    "current_operation",
    "integration_env",
]

ComparisonOperator = Literal["==", "!=", ">", "<", ">=", "<=", "contains", "exists"]

OperationType = Literal[
    "crud_operation",
    "file_operation",
    "logic_conditions",
    "run_script",
    "http_request",
    "delay",
    "manual_operation",
    "data_transformation",
    "messaging",
    "ai_model",
]

RoutingKind = Literal[
    "continue",
    "goto",
    "end",
    "retry",
    "compensate",
    "alert",
    "goto_integration",
]

ValidationStatus = Literal["untested", "valid", "invalid", "testing"]


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model reading and writing the editor's camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Automation-level contract
# ---------------------------------------------------------------------------


class AutomationParameter(CamelModel):
    """A typed input the caller of an automation must (or may) provide."""

    id: str = Field(default_factory=new_id)
    name: str
    type: ParameterType = "string"
    required: bool = False
    description: Optional[str] = None
    default_value: Any = None


class AutomationOutput(CamelModel):
    """An automation output: a boolean constant, an operation output or an env value."""

    id: str = Field(default_factory=new_id)
    name: str
    source: Literal["constant", "operation_output", "integration_env"] = "constant"
    value: Any = None
    source_operation_id: Optional[str] = None
    source_parameter: Optional[str] = None


class AutomationFailurePolicy(CamelModel):
    """Last-resort handler applied when an operation's own routing cannot recover."""

    action: Literal["retry", "fail", "goto_operation", "goto_integration"] = "fail"
    retry_count: int = Field(0, ge=0)
    retry_delay: float = Field(0.0, ge=0)
    operation_id: Optional[str] = None
    integration_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Value references and per-operation directives
# ---------------------------------------------------------------------------


class ValueRef(CamelModel):
    """A symbolic reference resolved against the execution context."""

    source: ValueSource = "manual"
    value: Any = None
    source_operation_id: Optional[str] = None


class Operand(ValueRef):
    pass


class OperationInputMapping(CamelModel):
    """Binds one operation input slot to an automation input or a prior output."""

    id: str = Field(default_factory=new_id)
    parameter_name: str
    source: ValueSource = "automation_input"
    source_parameter: Optional[str] = None
    source_operation_id: Optional[str] = None
    value: Any = None
    type: Optional[ParameterType] = None

    def as_ref(self) -> ValueRef:
        if self.source == "manual":
            return ValueRef(source="manual", value=self.value)
        name = self.source_parameter if self.source_parameter is not None else self.value
        return ValueRef(
            source=self.source,
            value=name,
            source_operation_id=self.source_operation_id,
        )


class OperationOutputParameter(CamelModel):
    """Selects a named output from an action result by dotted path."""

    name: str
    path: Optional[str] = None
    type: Optional[ParameterType] = None


class RunCondition(CamelModel):
    enabled: bool = False
    field: str = ""
    operator: ComparisonOperator = "=="
    value: Any = None
    source: ValueSource = "automation_input"
    source_operation_id: Optional[str] = None

    def as_ref(self) -> ValueRef:
        return ValueRef(
            source=self.source,
            value=self.field,
            source_operation_id=self.source_operation_id,
        )


class Iteration(CamelModel):
    enabled: bool = False
    source_array: Any = None
    item_variable: str = "item"
    source: ValueSource = "automation_input"
    source_operation_id: Optional[str] = None

    def as_ref(self) -> ValueRef:
        return ValueRef(
            source=self.source,
            value=self.source_array,
            source_operation_id=self.source_operation_id,
        )


class RoutingAction(CamelModel):
    """What happens after an operation succeeds (``onSuccess``) or fails (``onFailure``)."""

    action: RoutingKind = "continue"
    target_operation_id: Optional[str] = None
    retry_count: int = Field(0, ge=0)
    retry_delay: float = Field(0.0, ge=0)
    backoff_multiplier: float = Field(1.0, gt=0)
    compensating_operation_id: Optional[str] = None
    alert_message: Optional[str] = None
    integration_id: Optional[str] = None


class SubOperation(CamelModel):
    """One step of a ``logic_conditions`` operation."""

    id: str = Field(default_factory=new_id)
    operator: str
    operands: list[Operand] = []
    output_name: str


# ---------------------------------------------------------------------------
# Type-specific operation configuration (tagged by the operation type)
# ---------------------------------------------------------------------------


class CrudCondition(ValueRef):
    field: str
    operator: ComparisonOperator = "=="


class BodyField(ValueRef):
    key: str


class CrudConfig(CamelModel):
    type: Literal["crud_operation"] = "crud_operation"
    database: Optional[str] = None
    table: Optional[str] = None
    operation: Optional[Literal["create", "read", "update", "delete"]] = None
    conditions: list[CrudCondition] = []
    columns: list[str] = []
    data: dict[str, Any] = {}

    @field_validator("conditions", mode="before")
    @classmethod
    def _conditions_from_mapping(cls, value: Any) -> Any:
        # The editor stores simple equality filters as {column: value}
        if isinstance(value, dict):
            return [{"field": k, "operator": "==", "value": v} for k, v in value.items()]
        return value


class FileConfig(CamelModel):
    type: Literal["file_operation"] = "file_operation"
    file_operation: Optional[Literal["download", "upload", "delete", "open", "write"]] = None
    download_protocol: Optional[Literal["http", "tcp", "s3"]] = None
    upload_protocol: Optional[Literal["http", "tcp", "s3"]] = None
    url: Optional[str] = None
    source_path: Optional[str] = None
    target_path: Optional[str] = None
    bucket: Optional[str] = None
    content: Any = None


class HttpRequestConfig(CamelModel):
    type: Literal["http_request"] = "http_request"
    http_request_method: Optional[Literal["GET", "POST", "PUT", "PATCH", "DELETE"]] = None
    http_request_url: Optional[str] = None
    http_request_timeout: Optional[float] = None
    http_request_headers: dict[str, str] = {}
    body_fields: list[BodyField] = []


class ScriptConfig(CamelModel):
    type: Literal["run_script"] = "run_script"
    script_language: Optional[Literal["python", "javascript", "bash"]] = None
    script_content: Optional[str] = None
    script_timeout: Optional[float] = None


class MessagingConfig(CamelModel):
    type: Literal["messaging"] = "messaging"
    messaging_type: Optional[Literal["email", "slack", "sms", "webhook"]] = None
    recipient: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    webhook_url: Optional[str] = None


class DelayConfig(CamelModel):
    type: Literal["delay"] = "delay"
    delay_duration: Optional[float] = Field(None, ge=0)
    delay_unit: Optional[Literal["milliseconds", "seconds", "minutes", "hours"]] = None


class LogicConfig(CamelModel):
    type: Literal["logic_conditions"] = "logic_conditions"
    operations: list[SubOperation] = []


class ManualConfig(CamelModel):
    type: Literal["manual_operation"] = "manual_operation"
    instructions: Optional[str] = None
    assignee: Optional[str] = None


class DataTransformationConfig(CamelModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["data_transformation"] = "data_transformation"


class AiModelConfig(CamelModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["ai_model"] = "ai_model"


OperationConfig = Annotated[
    Union[
        CrudConfig,
        FileConfig,
        HttpRequestConfig,
        ScriptConfig,
        MessagingConfig,
        DelayConfig,
        LogicConfig,
        ManualConfig,
        DataTransformationConfig,
        AiModelConfig,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Operations and automations
# ---------------------------------------------------------------------------


class AutomationOperation(CamelModel):
    """A single step of an automation."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    order: int = Field(1, ge=1)
    type: OperationType
    input_mappings: list[OperationInputMapping] = []
    run_condition: Optional[RunCondition] = None
    iteration: Optional[Iteration] = None
    config: OperationConfig
    output_parameters: list[OperationOutputParameter] = []
    on_success: Optional[RoutingAction] = None
    on_failure: Optional[RoutingAction] = None
    validation_status: ValidationStatus = "untested"

    @model_validator(mode="before")
    @classmethod
    def _tag_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        op_type = data.get("type")
        config = data.get("config")
        if config is None:
            return {**data, "config": {"type": op_type}}
        if isinstance(config, dict):
            return {**data, "config": {**config, "type": op_type}}
        return data

    @model_validator(mode="after")
    def _config_matches_type(self) -> "AutomationOperation":
        if self.config.type != self.type:
            raise ValueError(
                f"Operation {self.id} has type {self.type!r} but config for {self.config.type!r}"
            )
        return self

    @property
    def label(self) -> str:
        return self.name or self.id


class Automation(CamelModel):
    """A complete automation: an ordered list of operations plus its I/O contract."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    enabled: bool = True
    operations: list[AutomationOperation] = []
    input_parameters: list[AutomationParameter] = []
    output_parameters: list[AutomationOutput] = []
    on_failure: Optional[AutomationFailurePolicy] = None
    project_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _sort_operations(self) -> "Automation":
        self.operations.sort(key=lambda op: op.order)
        return self

    def get_operation(self, operation_id: str) -> AutomationOperation | None:
        for op in self.operations:
            if op.id == operation_id:
                return op
        return None

    def normalize_order(self) -> None:
        """Renumber operations to the contiguous range 1..N, keeping their sequence."""
        for index, op in enumerate(self.operations, 1):
            op.order = index

    def add_operation(
        self, operation: AutomationOperation, position: int | None = None
    ) -> AutomationOperation:
        """Insert an operation (at the end by default) and renumber."""
        if self.get_operation(operation.id) is not None:
            raise ValueError(f"Operation {operation.id} already exists in automation {self.id}")
        if position is None:
            self.operations.append(operation)
        else:
            self.operations.insert(max(position - 1, 0), operation)
        self.normalize_order()
        self.touch()
        return operation

    def remove_operation(self, operation_id: str) -> bool:
        before = len(self.operations)
        self.operations = [op for op in self.operations if op.id != operation_id]
        if len(self.operations) == before:
            return False
        self.normalize_order()
        self.touch()
        return True

    def move_operation(self, operation_id: str, new_order: int) -> None:
        op = self.get_operation(operation_id)
        if op is None:
            raise KeyError(operation_id)
        self.operations.remove(op)
        index = min(max(new_order, 1), len(self.operations) + 1) - 1
        self.operations.insert(index, op)
        self.normalize_order()
        self.touch()

    def clone_operation(self, operation_id: str) -> AutomationOperation:
        """Deep-copy an operation under a fresh id, placed right after the original."""
        source = self.get_operation(operation_id)
        if source is None:
            raise KeyError(operation_id)
        clone = source.model_copy(
            deep=True,
            update={
                "id": new_id(),
                "name": f"{source.name} (copy)" if source.name else "",
                "validation_status": "untested",
            },
        )
        return self.add_operation(clone, position=source.order + 1)

    def clone(self, name: str | None = None) -> "Automation":
        now = _now()
        return self.model_copy(
            deep=True,
            update={
                "id": new_id(),
                "name": name or f"{self.name} (copy)",
                "created_at": now,
                "updated_at": now,
            },
        )

    def touch(self) -> None:
        self.updated_at = _now()

    # -- persisted record ----------------------------------------------------

    def to_record(self) -> "AutomationRecord":
        return AutomationRecord(
            id=self.id,
            project_id=self.project_id,
            name=self.name,
            description=self.description,
            enabled=self.enabled,
            operations=[op.model_dump(mode="json", by_alias=True) for op in self.operations],
            input_parameters=[
                p.model_dump(mode="json", by_alias=True) for p in self.input_parameters
            ],
            output_parameters=[
                p.model_dump(mode="json", by_alias=True) for p in self.output_parameters
            ],
            on_failure=(
                self.on_failure.model_dump(mode="json", by_alias=True)
                if self.on_failure
                else None
            ),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_record(cls, record: "AutomationRecord | dict[str, Any]") -> "Automation":
        if isinstance(record, dict):
            record = AutomationRecord.model_validate(record)
        return cls.model_validate(
            {
                "id": record.id,
                "project_id": record.project_id,
                "name": record.name,
                "description": record.description or "",
                "enabled": record.enabled,
                "operations": record.operations,
                "input_parameters": record.input_parameters or [],
                "output_parameters": record.output_parameters or [],
                "on_failure": record.on_failure,
                "created_at": record.created_at,
                "updated_at": record.updated_at,
            }
        )


class AutomationRecord(BaseModel):
    """Row shape of the ``automations`` table: JSON columns hold the nested graph."""

    id: str
    project_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    enabled: bool = True
    operations: list[dict[str, Any]] = []
    input_parameters: Optional[list[dict[str, Any]]] = None
    output_parameters: Optional[list[dict[str, Any]]] = None
    on_failure: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
