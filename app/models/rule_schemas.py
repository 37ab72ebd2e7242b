"""Pydantic models for the rules and scheduled actions JSON API."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.rule import ActionType, LogicalOperator, SystemType


class ActionCreate(BaseModel):
    type: ActionType
    label: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    url: Optional[str] = None
    delay_in_minutes: Optional[int] = Field(None, ge=0, description="Minutes to wait before running")

    @model_validator(mode="after")
    def check_required_fields(self):
        """Ensure each action type carries the fields it needs."""
        if self.type == ActionType.LABEL and not self.label:
            raise ValueError("LABEL actions require a label")
        if self.type == ActionType.CALL_WEBHOOK and not self.url:
            raise ValueError("CALL_WEBHOOK actions require a url")
        if self.type == ActionType.FORWARD and not self.to:
            raise ValueError("FORWARD actions require a recipient")
        if self.type == ActionType.SEND_EMAIL:
            missing = [f for f in ("to", "subject", "content") if not getattr(self, f)]
            if missing:
                raise ValueError(f"SEND_EMAIL actions require: {', '.join(missing)}")
        return self


class RuleCreate(BaseModel):
    """Model for creating a rule with its actions."""

    email_account_id: UUID
    name: str = Field(min_length=1, max_length=200)
    enabled: bool = True
    automate: bool = True
    run_on_threads: bool = False
    conditional_operator: LogicalOperator = LogicalOperator.AND
    instructions: Optional[str] = None
    from_pattern: Optional[str] = None
    to_pattern: Optional[str] = None
    subject_pattern: Optional[str] = None
    body_pattern: Optional[str] = None
    system_type: Optional[SystemType] = None
    actions: List[ActionCreate] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Rule name cannot be blank")
        return v

    @model_validator(mode="after")
    def check_has_condition(self):
        """A rule without any condition would match nothing."""
        if not any([
            self.instructions,
            self.from_pattern,
            self.to_pattern,
            self.subject_pattern,
            self.body_pattern,
            self.system_type,
        ]):
            raise ValueError("Rule needs instructions, a static pattern or a system type")
        return self


class RuleUpdate(BaseModel):
    """
    Partial rule update.

    When actions is given, it replaces the rule's actions entirely.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    enabled: Optional[bool] = None
    automate: Optional[bool] = None
    run_on_threads: Optional[bool] = None
    conditional_operator: Optional[LogicalOperator] = None
    instructions: Optional[str] = None
    from_pattern: Optional[str] = None
    to_pattern: Optional[str] = None
    subject_pattern: Optional[str] = None
    body_pattern: Optional[str] = None
    actions: Optional[List[ActionCreate]] = None

    @field_validator("name", "enabled", "automate", "run_on_threads", "conditional_operator")
    @classmethod
    def not_null(cls, v, info):
        """Omit a field to leave it unchanged; these columns cannot be cleared."""
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Rule name cannot be blank")
        return v


class ActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: ActionType
    label: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    url: Optional[str] = None
    delay_in_minutes: Optional[int] = None


class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email_account_id: UUID
    name: str
    enabled: bool
    automate: bool
    run_on_threads: bool
    conditional_operator: LogicalOperator
    instructions: Optional[str] = None
    from_pattern: Optional[str] = None
    to_pattern: Optional[str] = None
    subject_pattern: Optional[str] = None
    body_pattern: Optional[str] = None
    group_id: Optional[UUID] = None
    system_type: Optional[SystemType] = None
    actions: List[ActionResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class RuleTestRequest(BaseModel):
    email_account_id: UUID
    message_id: str = Field(min_length=1)


class ScheduledActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    executed_rule_id: UUID
    email_account_id: UUID
    message_id: str
    thread_id: str
    action_type: ActionType
    scheduled_for: datetime
    status: str
    retry_count: int
    error_message: Optional[str] = None
    executed_at: Optional[datetime] = None
    created_at: datetime
