"""001_initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

Messaging and alerting schema:
- messages, message_reads (read receipts)
- alert_rules, performance_alerts
- Partial unique index keeping at most one open alert per
  (player_id, alert_type, metric)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(conn, table_name: str) -> bool:
    """Check if a table exists."""
    return inspect(conn).has_table(table_name)


def _json_type():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    conn = op.get_bind()

    if not _table_exists(conn, 'messages'):
        op.create_table(
            'messages',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('type', sa.String(length=20), nullable=False),
            sa.Column('sender_id', sa.String(length=50), nullable=False),
            sa.Column('recipient_id', sa.String(length=50), nullable=True),
            sa.Column('content', sa.Text(), nullable=False),
            sa.Column('priority', sa.String(length=20), nullable=False, server_default='normal'),
            sa.Column('metadata', _json_type(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='sent'),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint(
                "(type = 'direct' AND recipient_id IS NOT NULL)"
                " OR (type = 'broadcast' AND recipient_id IS NULL)"
                " OR type = 'alert'",
                name='ck_messages_recipient_shape',
            ),
        )
        op.create_index('idx_messages_recipient_created', 'messages', ['recipient_id', 'created_at'])
        op.create_index('idx_messages_type_created', 'messages', ['type', 'created_at'])
        op.create_index('idx_messages_sender_type', 'messages', ['sender_id', 'type'])
        op.create_index('idx_messages_expires_at', 'messages', ['expires_at'])

    if not _table_exists(conn, 'message_reads'):
        op.create_table(
            'message_reads',
            sa.Column('message_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=50), nullable=False),
            sa.Column('read_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('device_info', _json_type(), nullable=False),
            sa.ForeignKeyConstraint(['message_id'], ['messages.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('message_id', 'user_id'),
        )
        op.create_index('idx_message_reads_user_read_at', 'message_reads', ['user_id', 'read_at'])

    if not _table_exists(conn, 'alert_rules'):
        op.create_table(
            'alert_rules',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('name', sa.String(length=200), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('metric_name', sa.String(length=100), nullable=False),
            sa.Column('comparison', sa.String(length=20), nullable=False),
            sa.Column('threshold_value', sa.Float(), nullable=False),
            sa.Column('secondary_threshold', sa.Float(), nullable=True),
            sa.Column('time_window', sa.Integer(), nullable=False, server_default='7'),
            sa.Column('alert_type', sa.String(length=50), nullable=False),
            sa.Column('severity', sa.String(length=20), nullable=False, server_default='warning'),
            sa.Column('alert_message', sa.Text(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('check_frequency', sa.String(length=20), nullable=False, server_default='daily'),
            sa.Column('applies_to', sa.String(length=20), nullable=False, server_default='all'),
            sa.Column('specific_players', _json_type(), nullable=False),
            sa.Column('created_by', sa.String(length=50), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('name'),
        )
        op.create_index('idx_alert_rules_is_active', 'alert_rules', ['is_active'])
        op.create_index('idx_alert_rules_metric_name', 'alert_rules', ['metric_name'])
        op.create_index('idx_alert_rules_check_frequency', 'alert_rules', ['check_frequency'])

    if not _table_exists(conn, 'performance_alerts'):
        op.create_table(
            'performance_alerts',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('player_id', sa.String(length=50), nullable=False),
            sa.Column('alert_type', sa.String(length=50), nullable=False),
            sa.Column('severity', sa.String(length=20), nullable=False, server_default='info'),
            sa.Column('metric', sa.String(length=100), nullable=False),
            sa.Column('current_value', sa.Float(), nullable=True),
            sa.Column('threshold_value', sa.Float(), nullable=True),
            sa.Column('trend', sa.Float(), nullable=True),
            sa.Column('message', sa.Text(), nullable=False),
            sa.Column('action_required', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('acknowledged', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('acknowledged_by', sa.String(length=50), nullable=True),
            sa.Column('acknowledged_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('rule_id', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.ForeignKeyConstraint(['rule_id'], ['alert_rules.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index(
            'uq_performance_alerts_open_lineage',
            'performance_alerts',
            ['player_id', 'alert_type', 'metric'],
            unique=True,
            postgresql_where=sa.text('resolved_at IS NULL'),
            sqlite_where=sa.text('resolved_at IS NULL'),
        )
        op.create_index('idx_performance_alerts_player', 'performance_alerts', ['player_id'])
        op.create_index(
            'idx_active_alerts', 'performance_alerts', ['acknowledged', 'severity', 'created_at']
        )


def downgrade() -> None:
    op.drop_table('performance_alerts')
    op.drop_table('alert_rules')
    op.drop_table('message_reads')
    op.drop_table('messages')
