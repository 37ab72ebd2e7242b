"""
Rule management endpoints.

Operators list, create, update and delete an account's rules, and run the
engine in test mode against a message without persisting or executing
anything.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.database import get_db
from app.models.email_account import EmailAccount
from app.models.matching import RunRulesResult
from app.models.rule import Action, Rule
from app.models.rule_schemas import (
    ActionCreate,
    RuleCreate,
    RuleResponse,
    RuleTestRequest,
    RuleUpdate,
)
from app.modules.email.factory import get_email_provider
from app.modules.email.provider import ProviderAuthError, ProviderError, ProviderNotFound
from app.modules.llm.openai_client import LLMError
from app.modules.rules.loader import load_rules
from app.modules.rules.run_rules import run_rules

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rules"])


def _build_action(data: ActionCreate) -> Action:
    return Action(
        type=data.type.value,
        label=data.label,
        subject=data.subject,
        content=data.content,
        to=data.to,
        cc=data.cc,
        bcc=data.bcc,
        url=data.url,
        delay_in_minutes=data.delay_in_minutes,
    )


async def _get_rule(db: AsyncSession, rule_id: UUID) -> Rule:
    result = await db.execute(
        select(Rule).options(selectinload(Rule.actions)).where(Rule.id == rule_id)
    )
    rule = result.scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


async def _name_taken(db: AsyncSession, email_account_id, name: str, exclude_id=None) -> bool:
    query = select(Rule.id).where(
        Rule.email_account_id == email_account_id,
        Rule.name == name,
    )
    if exclude_id is not None:
        query = query.where(Rule.id != exclude_id)
    result = await db.execute(query)
    return result.first() is not None


@router.get("", response_model=List[RuleResponse])
async def list_rules(email_account_id: UUID, db: AsyncSession = Depends(get_db)):
    """List every rule of an account, enabled or not, oldest first."""
    result = await db.execute(
        select(Rule)
        .options(selectinload(Rule.actions))
        .where(Rule.email_account_id == email_account_id)
        .order_by(Rule.created_at)
    )
    return result.scalars().all()


@router.post("", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(data: RuleCreate, db: AsyncSession = Depends(get_db)):
    """
    Create a rule with its actions.

    Raises:
        HTTPException 404: Unknown email account
        HTTPException 409: The account already has a rule with this name
    """
    account = await db.get(EmailAccount, data.email_account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Email account not found")

    if await _name_taken(db, account.id, data.name):
        raise HTTPException(status_code=409, detail="A rule with this name already exists")

    rule = Rule(
        email_account_id=account.id,
        name=data.name,
        enabled=data.enabled,
        automate=data.automate,
        run_on_threads=data.run_on_threads,
        conditional_operator=data.conditional_operator.value,
        instructions=data.instructions,
        from_pattern=data.from_pattern,
        to_pattern=data.to_pattern,
        subject_pattern=data.subject_pattern,
        body_pattern=data.body_pattern,
        system_type=data.system_type.value if data.system_type else None,
        actions=[_build_action(a) for a in data.actions],
    )
    db.add(rule)

    try:
        await db.flush()
    except IntegrityError:
        # Concurrent create with the same name
        await db.rollback()
        raise HTTPException(status_code=409, detail="A rule with this name already exists")

    logger.info(
        f"Created rule {rule.name}",
        extra={"email_account_id": str(account.id), "rule_id": str(rule.id)}
    )
    return await _get_rule(db, rule.id)


@router.patch("/{rule_id}", response_model=RuleResponse)
async def update_rule(rule_id: UUID, data: RuleUpdate, db: AsyncSession = Depends(get_db)):
    """
    Update a rule. A given actions list replaces the existing actions.

    Raises:
        HTTPException 404: Unknown rule
        HTTPException 409: The new name is taken
    """
    rule = await _get_rule(db, rule_id)
    changes = data.model_dump(exclude_unset=True, exclude={"actions"})

    if "name" in changes and changes["name"] != rule.name:
        if await _name_taken(db, rule.email_account_id, changes["name"], exclude_id=rule.id):
            raise HTTPException(status_code=409, detail="A rule with this name already exists")

    if "conditional_operator" in changes and changes["conditional_operator"] is not None:
        changes["conditional_operator"] = changes["conditional_operator"].value

    for field, value in changes.items():
        setattr(rule, field, value)

    if data.actions is not None:
        rule.actions = [_build_action(a) for a in data.actions]

    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="A rule with this name already exists")

    logger.info(f"Updated rule {rule.name}", extra={"rule_id": str(rule.id)})
    db.expire(rule)
    return await _get_rule(db, rule.id)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: UUID, db: AsyncSession = Depends(get_db)):
    """Delete a rule and its actions. Executed rule history keeps a null rule_id."""
    rule = await _get_rule(db, rule_id)
    await db.delete(rule)
    await db.flush()
    logger.info("Deleted rule", extra={"rule_id": str(rule_id)})


@router.post("/test", response_model=List[RunRulesResult])
async def test_rules(data: RuleTestRequest, db: AsyncSession = Depends(get_db)):
    """
    Run the engine in test mode on one message.

    Matches rules and resolves action arguments; nothing is executed or
    recorded.

    Raises:
        HTTPException 404: Unknown account or message
        HTTPException 502: The provider rejected the account's credentials, or
            the LLM or provider failed while matching
    """
    result = await db.execute(
        select(EmailAccount)
        .options(selectinload(EmailAccount.user))
        .where(EmailAccount.id == data.email_account_id)
    )
    account = result.scalar_one_or_none()
    if not account:
        raise HTTPException(status_code=404, detail="Email account not found")

    log_extra = {"email_account_id": str(account.id), "message_id": data.message_id}

    try:
        provider = await get_email_provider(account, db)
        message = await provider.get_message(data.message_id)
    except ProviderNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
    except ProviderAuthError as e:
        logger.warning(f"Provider auth failed during rule test: {e}", extra=log_extra)
        raise HTTPException(status_code=502, detail="Mail provider rejected credentials")

    rules = await load_rules(db, account.id, enabled_only=True)
    logger.info(f"Testing {len(rules)} rules", extra=log_extra)
    try:
        return await run_rules(provider, message, rules, account, db, is_test=True)
    except LLMError as e:
        logger.warning(f"LLM failed during rule test: {e}", extra=log_extra)
        raise HTTPException(status_code=502, detail="AI rule selection failed")
    except ProviderError as e:
        logger.warning(f"Provider failed during rule test: {e}", extra=log_extra)
        raise HTTPException(status_code=502, detail="Mail provider request failed")
