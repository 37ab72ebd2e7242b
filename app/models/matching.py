"""
Rule engine value types.

RuleData / ActionData are frozen snapshots of the ORM rows so that matching,
draft limiting and continuity checks never mutate session state.
"""

from enum import Enum
from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.rule import ActionType, LogicalOperator, SystemType
from app.models.group import GroupItemType
from app.models.executed_rule import ExecutedRuleStatus


def _to_str(value: Any) -> Any:
    return str(value) if value is not None else None


class ActionData(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    type: ActionType
    label: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    url: Optional[str] = None
    delay_in_minutes: Optional[int] = None

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, value):
        return _to_str(value)


class GroupItemData(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    type: GroupItemType
    value: str
    exclude: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, value):
        return _to_str(value)


class GroupData(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    name: str
    items: List[GroupItemData] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, value):
        return _to_str(value)


class RuleData(BaseModel):
    """
    Snapshot of a Rule with its actions and learned-pattern group.

    Build from ORM rows with RuleData.model_validate(rule) after eager loading
    actions and group items.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    name: str
    enabled: bool = True
    automate: bool = True
    run_on_threads: bool = False
    conditional_operator: LogicalOperator = LogicalOperator.AND
    instructions: Optional[str] = None
    from_pattern: Optional[str] = None
    to_pattern: Optional[str] = None
    subject_pattern: Optional[str] = None
    body_pattern: Optional[str] = None
    group_id: Optional[str] = None
    group: Optional[GroupData] = None
    system_type: Optional[SystemType] = None
    actions: List[ActionData] = Field(default_factory=list)

    @field_validator("id", "group_id", mode="before")
    @classmethod
    def stringify_ids(cls, value):
        return _to_str(value)

    @property
    def has_static_conditions(self) -> bool:
        return bool(self.from_pattern or self.to_pattern or self.subject_pattern or self.body_pattern)


class ActionItem(BaseModel):
    """An action with every template variable resolved, ready to execute."""

    id: Optional[str] = None
    type: ActionType
    label: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    url: Optional[str] = None
    delay_in_minutes: Optional[int] = None

    @property
    def is_delayed(self) -> bool:
        return bool(self.delay_in_minutes and self.delay_in_minutes > 0)


class ConditionType(str, Enum):
    AI = "AI"
    STATIC = "STATIC"
    LEARNED_PATTERN = "LEARNED_PATTERN"
    PRESET = "PRESET"


class MatchReason(BaseModel):
    type: ConditionType
    group_item: Optional[GroupItemData] = None
    group_name: Optional[str] = None
    system_type: Optional[SystemType] = None

    def describe(self) -> str:
        if self.type == ConditionType.LEARNED_PATTERN and self.group_item:
            return f'Matched learned pattern: "{self.group_item.type.value}: {self.group_item.value}"'
        if self.type == ConditionType.PRESET:
            return "Matched a system preset"
        if self.type == ConditionType.STATIC:
            return "Matched static conditions"
        return "Matched by AI"


class RuleMatch(BaseModel):
    rule: RuleData
    match_reasons: List[MatchReason] = Field(default_factory=list)


class MatchingRulesResult(BaseModel):
    matches: List[RuleMatch] = Field(default_factory=list)
    reasoning: str = ""


class RunRulesResult(BaseModel):
    """Outcome for one matched rule (or a single SKIPPED entry)."""

    rule: Optional[RuleData] = None
    action_items: List[ActionItem] = Field(default_factory=list)
    reason: Optional[str] = None
    status: ExecutedRuleStatus
    match_reasons: List[MatchReason] = Field(default_factory=list)
    executed_rule_id: Optional[str] = None
