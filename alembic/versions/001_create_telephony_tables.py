"""Create telephony tables

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if table exists."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    if not table_exists('phone_numbers'):
        op.create_table(
            'phone_numbers',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('number', sa.String(20), nullable=False),
            sa.Column('tenant_id', sa.Integer, nullable=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='available'),
            sa.Column('status_changed_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('region', sa.String(100), nullable=True),
            sa.Column('monthly_price', sa.Numeric(12, 2), nullable=True),
            sa.Column('sms_supported', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('connected_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('next_renewal_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('connection_seq', sa.Integer, nullable=False, server_default='0'),
            *timestamps(),
        )
        op.create_index('ix_phone_numbers_number', 'phone_numbers', ['number'], unique=True)
        op.create_index('ix_phone_numbers_tenant_id', 'phone_numbers', ['tenant_id'])
        op.create_index('ix_phone_numbers_status', 'phone_numbers', ['status'])
        op.create_index('ix_phone_numbers_next_renewal_at', 'phone_numbers', ['next_renewal_at'])

    if not table_exists('inbound_routings'):
        op.create_table(
            'inbound_routings',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('tenant_id', sa.Integer, nullable=False),
            sa.Column('phone_number_id', sa.Integer, sa.ForeignKey('phone_numbers.id'), nullable=False, unique=True),
            sa.Column('assistant_id', sa.Integer, nullable=True),
            sa.Column('channel_ids', sa.JSON, nullable=False),
            sa.Column('function_ids', sa.JSON, nullable=False),
            sa.Column('prompt_task', sa.Text, nullable=True),
            *timestamps(),
        )
        op.create_index('ix_inbound_routings_tenant_id', 'inbound_routings', ['tenant_id'])

    if not table_exists('assistants'):
        op.create_table(
            'assistants',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('tenant_id', sa.Integer, nullable=False),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
            *timestamps(),
        )
        op.create_index('ix_assistants_tenant_id', 'assistants', ['tenant_id'])

    if not table_exists('balances'):
        op.create_table(
            'balances',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('tenant_id', sa.Integer, nullable=False),
            sa.Column('amount', sa.Numeric(14, 2), nullable=False, server_default='0'),
            sa.Column('free_minutes_limit', sa.Integer, nullable=False, server_default='0'),
            sa.Column('free_minutes_used', sa.Integer, nullable=False, server_default='0'),
            sa.Column('version', sa.Integer, nullable=False, server_default='0'),
            *timestamps(),
        )
        op.create_index('ix_balances_tenant_id', 'balances', ['tenant_id'], unique=True)

    if not table_exists('ledger_entries'):
        op.create_table(
            'ledger_entries',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('tenant_id', sa.Integer, nullable=False),
            sa.Column('idempotency_key', sa.String(255), nullable=False, unique=True),
            sa.Column('kind', sa.String(20), nullable=False),
            sa.Column('amount', sa.Numeric(14, 2), nullable=False),
            sa.Column('free_minutes', sa.Integer, nullable=False, server_default='0'),
            sa.Column('reason', sa.String(255), nullable=False),
            sa.Column('balance_after', sa.Numeric(14, 2), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('reference', sa.String(100), nullable=True),
        )
        op.create_index('ix_ledger_entries_tenant_id', 'ledger_entries', ['tenant_id'])

    if not table_exists('active_calls'):
        op.create_table(
            'active_calls',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('call_id', sa.String(255), nullable=False, unique=True),
            sa.Column('tenant_id', sa.Integer, nullable=True),
            sa.Column('line_number', sa.String(20), nullable=False),
            sa.Column('caller_number', sa.String(50), nullable=False),
            sa.Column('callee_number', sa.String(50), nullable=False),
            sa.Column('direction', sa.String(20), nullable=True),
            sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index('ix_active_calls_tenant_id', 'active_calls', ['tenant_id'])

    if not table_exists('call_records'):
        op.create_table(
            'call_records',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('call_id', sa.String(255), nullable=False, unique=True),
            sa.Column('tenant_id', sa.Integer, nullable=True),
            sa.Column('line_number', sa.String(20), nullable=False),
            sa.Column('caller_number', sa.String(50), nullable=False),
            sa.Column('callee_number', sa.String(50), nullable=False),
            sa.Column('direction', sa.String(20), nullable=False),
            sa.Column('status', sa.String(20), nullable=False),
            sa.Column('duration_seconds', sa.Integer, nullable=False, server_default='0'),
            sa.Column('billed_minutes', sa.Integer, nullable=False, server_default='0'),
            sa.Column('free_minutes', sa.Integer, nullable=False, server_default='0'),
            sa.Column('rate', sa.Numeric(10, 2), nullable=False),
            sa.Column('cost', sa.Numeric(14, 2), nullable=False, server_default='0'),
            sa.Column('call_time', sa.DateTime(timezone=True), nullable=False),
            sa.Column('record_url', sa.Text, nullable=True),
            sa.Column('chat_history', sa.JSON, nullable=True),
            sa.Column('assistant_id', sa.Integer, nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index('ix_call_records_line_number', 'call_records', ['line_number'])
        op.create_index('ix_call_records_tenant_time', 'call_records', ['tenant_id', 'call_time', 'id'])

    if not table_exists('dead_letter_events'):
        op.create_table(
            'dead_letter_events',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('call_id', sa.String(255), nullable=False),
            sa.Column('payload', sa.JSON, nullable=False),
            sa.Column('error', sa.Text, nullable=False),
            sa.Column('attempts', sa.Integer, nullable=False, server_default='1'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index('ix_dead_letter_events_call_id', 'dead_letter_events', ['call_id'])

    if not table_exists('notification_channels'):
        op.create_table(
            'notification_channels',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('tenant_id', sa.Integer, nullable=False),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('type', sa.String(20), nullable=False),
            sa.Column('settings', sa.JSON, nullable=False),
            sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('priority', sa.Integer, nullable=False, server_default='0'),
            sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
            *timestamps(),
        )
        op.create_index('ix_notification_channels_tenant_id', 'notification_channels', ['tenant_id'])

    if not table_exists('user_functions'):
        op.create_table(
            'user_functions',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('tenant_id', sa.Integer, nullable=False),
            sa.Column('name', sa.String(64), nullable=False),
            sa.Column('description', sa.Text, nullable=True),
            sa.Column('parameters', sa.JSON, nullable=False),
            sa.Column('webhook_url', sa.String(1024), nullable=True),
            sa.Column(
                'channel_id',
                sa.Integer,
                sa.ForeignKey('notification_channels.id', ondelete='SET NULL'),
                nullable=True,
            ),
            sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
            *timestamps(),
        )
        op.create_index('ix_user_functions_tenant_id', 'user_functions', ['tenant_id'])


def downgrade() -> None:
    for table_name in (
        'user_functions',
        'notification_channels',
        'dead_letter_events',
        'call_records',
        'active_calls',
        'ledger_entries',
        'balances',
        'assistants',
        'inbound_routings',
        'phone_numbers',
    ):
        if table_exists(table_name):
            op.drop_table(table_name)
