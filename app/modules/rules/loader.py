"""
Loading rules for the engine.
"""

from typing import List

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from app.models.group import Group
from app.models.matching import RuleData
from app.models.rule import Rule


async def load_rules(session, email_account_id, enabled_only: bool = True) -> List[RuleData]:
    """Snapshots of an account's rules with actions and learned patterns loaded."""
    query = (
        select(Rule)
        .options(
            selectinload(Rule.actions),
            selectinload(Rule.group).selectinload(Group.items),
        )
        .where(Rule.email_account_id == email_account_id)
        .order_by(Rule.created_at)
    )
    if enabled_only:
        query = query.where(Rule.enabled.is_(True))

    result = await session.execute(query)
    return [RuleData.model_validate(rule) for rule in result.scalars().all()]
