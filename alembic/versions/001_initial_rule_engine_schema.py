"""Initial rule engine schema: accounts, rules, executions, scheduled actions

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # Create users table
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('ai_model', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    # Create email_accounts table
    op.create_table(
        'email_accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('email_address', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('encrypted_access_token', sa.Text(), nullable=True),
        sa.Column('encrypted_refresh_token', sa.Text(), nullable=False),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('about', sa.Text(), nullable=True),
        sa.Column('writing_style', sa.Text(), nullable=True),
        sa.Column('signature', sa.Text(), nullable=True),
        sa.Column('cold_email_prompt', sa.Text(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('watch_expiration', sa.DateTime(), nullable=True),
        sa.Column('last_history_id', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('last_webhook_received_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_email_accounts_email_address'), 'email_accounts', ['email_address'], unique=True)
    op.create_index(op.f('ix_email_accounts_user_id'), 'email_accounts', ['user_id'], unique=False)

    # Create groups and group_items tables (learned patterns)
    op.create_table(
        'groups',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email_account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['email_account_id'], ['email_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_groups_email_account_id'), 'groups', ['email_account_id'], unique=False)

    op.create_table(
        'group_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('group_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('value', sa.String(), nullable=False),
        sa.Column('exclude', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['group_id'], ['groups.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_group_items_group_id'), 'group_items', ['group_id'], unique=False)

    # Create rules and actions tables
    op.create_table(
        'rules',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email_account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('automate', sa.Boolean(), nullable=False),
        sa.Column('run_on_threads', sa.Boolean(), nullable=False),
        sa.Column('conditional_operator', sa.String(), nullable=False),
        sa.Column('instructions', sa.Text(), nullable=True),
        sa.Column('from_pattern', sa.String(), nullable=True),
        sa.Column('to_pattern', sa.String(), nullable=True),
        sa.Column('subject_pattern', sa.String(), nullable=True),
        sa.Column('body_pattern', sa.String(), nullable=True),
        sa.Column('group_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('system_type', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['email_account_id'], ['email_accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['group_id'], ['groups.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email_account_id', 'name', name='uq_rules_account_name'),
        sa.UniqueConstraint('group_id')
    )
    op.create_index(op.f('ix_rules_email_account_id'), 'rules', ['email_account_id'], unique=False)
    op.create_index(op.f('ix_rules_system_type'), 'rules', ['system_type'], unique=False)

    op.create_table(
        'actions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('rule_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('label', sa.String(), nullable=True),
        sa.Column('subject', sa.String(), nullable=True),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('to', sa.String(), nullable=True),
        sa.Column('cc', sa.String(), nullable=True),
        sa.Column('bcc', sa.String(), nullable=True),
        sa.Column('url', sa.String(), nullable=True),
        sa.Column('delay_in_minutes', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['rule_id'], ['rules.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_actions_rule_id'), 'actions', ['rule_id'], unique=False)

    # Create executed_rules and executed_actions tables (audit trail)
    op.create_table(
        'executed_rules',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email_account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('rule_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('thread_id', sa.String(), nullable=False),
        sa.Column('message_id', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('automated', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('match_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['email_account_id'], ['email_accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['rule_id'], ['rules.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_executed_rules_email_account_id'), 'executed_rules', ['email_account_id'], unique=False)
    op.create_index(op.f('ix_executed_rules_rule_id'), 'executed_rules', ['rule_id'], unique=False)
    op.create_index(op.f('ix_executed_rules_thread_id'), 'executed_rules', ['thread_id'], unique=False)
    op.create_index(op.f('ix_executed_rules_message_id'), 'executed_rules', ['message_id'], unique=False)
    op.create_index(op.f('ix_executed_rules_status'), 'executed_rules', ['status'], unique=False)
    op.create_index(op.f('ix_executed_rules_created_at'), 'executed_rules', ['created_at'], unique=False)

    op.create_table(
        'executed_actions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('executed_rule_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('label', sa.String(), nullable=True),
        sa.Column('subject', sa.String(), nullable=True),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('to', sa.String(), nullable=True),
        sa.Column('cc', sa.String(), nullable=True),
        sa.Column('bcc', sa.String(), nullable=True),
        sa.Column('url', sa.String(), nullable=True),
        sa.Column('draft_id', sa.String(), nullable=True),
        sa.Column('was_draft_sent', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['executed_rule_id'], ['executed_rules.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_executed_actions_executed_rule_id'), 'executed_actions', ['executed_rule_id'], unique=False)

    # Create scheduled_actions table (delayed actions)
    op.create_table(
        'scheduled_actions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('executed_rule_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email_account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('message_id', sa.String(), nullable=False),
        sa.Column('thread_id', sa.String(), nullable=False),
        sa.Column('action_type', sa.String(), nullable=False),
        sa.Column('label', sa.String(), nullable=True),
        sa.Column('subject', sa.String(), nullable=True),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('to', sa.String(), nullable=True),
        sa.Column('cc', sa.String(), nullable=True),
        sa.Column('bcc', sa.String(), nullable=True),
        sa.Column('url', sa.String(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
        sa.Column('executed_action_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['executed_rule_id'], ['executed_rules.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['email_account_id'], ['email_accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['executed_action_id'], ['executed_actions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_scheduled_actions_executed_rule_id'), 'scheduled_actions', ['executed_rule_id'], unique=False)
    op.create_index(op.f('ix_scheduled_actions_email_account_id'), 'scheduled_actions', ['email_account_id'], unique=False)
    op.create_index(op.f('ix_scheduled_actions_thread_id'), 'scheduled_actions', ['thread_id'], unique=False)
    op.create_index(op.f('ix_scheduled_actions_scheduled_for'), 'scheduled_actions', ['scheduled_for'], unique=False)
    op.create_index(op.f('ix_scheduled_actions_status'), 'scheduled_actions', ['status'], unique=False)

    # Create cold_emails table
    op.create_table(
        'cold_emails',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email_account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('from_email', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('message_id', sa.String(), nullable=True),
        sa.Column('thread_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['email_account_id'], ['email_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email_account_id', 'from_email', name='uq_cold_emails_account_sender')
    )
    op.create_index(op.f('ix_cold_emails_email_account_id'), 'cold_emails', ['email_account_id'], unique=False)

    # Create thread_trackers table (reply tracking)
    op.create_table(
        'thread_trackers',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email_account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('thread_id', sa.String(), nullable=False),
        sa.Column('message_id', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
        sa.Column('resolved', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['email_account_id'], ['email_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_thread_trackers_email_account_id'), 'thread_trackers', ['email_account_id'], unique=False)
    op.create_index(op.f('ix_thread_trackers_thread_id'), 'thread_trackers', ['thread_id'], unique=False)


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('thread_trackers')
    op.drop_table('cold_emails')
    op.drop_table('scheduled_actions')
    op.drop_table('executed_actions')
    op.drop_table('executed_rules')
    op.drop_table('actions')
    op.drop_table('rules')
    op.drop_table('group_items')
    op.drop_table('groups')
    op.drop_table('email_accounts')
    op.drop_table('users')
