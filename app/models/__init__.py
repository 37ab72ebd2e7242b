"""
Database models package.

Import all models here so Alembic can discover them for migrations.
"""

from app.models.user import User
from app.models.email_account import EmailAccount
from app.models.rule import Rule, Action
from app.models.group import Group, GroupItem
from app.models.executed_rule import ExecutedRule, ExecutedAction
from app.models.scheduled_action import ScheduledAction
from app.models.cold_email import ColdEmail
from app.models.thread_tracker import ThreadTracker

__all__ = [
    "User",
    "EmailAccount",
    "Rule",
    "Action",
    "Group",
    "GroupItem",
    "ExecutedRule",
    "ExecutedAction",
    "ScheduledAction",
    "ColdEmail",
    "ThreadTracker",
]
