"""initial_coordination_schema

Revision ID: 001_initial
Revises:
Create Date: 2026-03-01

Creates rounds, round_signups, orders, order_items and order_assignments.

The partial unique indexes back the coordination invariants at the
database level:
- uq_assignments_active_order: one ACCEPTED/IN_PROGRESS assignment per order
- uq_signups_active_round_volunteer: one WAITLISTED/CONFIRMED sign-up per
  volunteer per round
- uq_signups_round_role_seat: one CONFIRMED team lead and one CONFIRMED
  clinician per round

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'rounds',
        sa.Column('round_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('location', sa.String(255), nullable=False),
        sa.Column('max_participants', sa.Integer(), nullable=False),
        sa.Column('order_capacity', sa.Integer(), nullable=False, server_default='20'),
        sa.Column('status', sa.String(20), nullable=False, server_default='SCHEDULED'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('end_time > start_time', name='chk_round_time'),
        sa.CheckConstraint('max_participants >= 0', name='chk_round_max_participants'),
        sa.CheckConstraint('order_capacity >= 0', name='chk_round_order_capacity'),
    )
    op.create_index('idx_rounds_status_start', 'rounds', ['status', 'start_time'])

    op.create_table(
        'round_signups',
        sa.Column('signup_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('round_id', sa.Integer(), sa.ForeignKey('rounds.round_id'), nullable=False),
        sa.Column('volunteer_id', sa.Integer(), nullable=False),
        sa.Column('requested_role', sa.String(20), nullable=False, server_default='VOLUNTEER'),
        sa.Column('status', sa.String(20), nullable=False, server_default='WAITLISTED'),
        sa.Column('signup_time', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        'uq_signups_active_round_volunteer',
        'round_signups',
        ['round_id', 'volunteer_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('WAITLISTED', 'CONFIRMED')"),
    )
    op.create_index(
        'uq_signups_round_role_seat',
        'round_signups',
        ['round_id', 'requested_role'],
        unique=True,
        postgresql_where=sa.text(
            "status = 'CONFIRMED' AND requested_role IN ('TEAM_LEAD', 'CLINICIAN')"
        ),
    )
    op.create_index('idx_signups_round_status', 'round_signups', ['round_id', 'status'])
    op.create_index('idx_signups_volunteer', 'round_signups', ['volunteer_id'])

    op.create_table(
        'orders',
        sa.Column('order_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('client_ip', sa.String(64), nullable=True),
        sa.Column('round_id', sa.Integer(), sa.ForeignKey('rounds.round_id'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('delivery_address', sa.String(500), nullable=False),
        sa.Column('phone_number', sa.String(50), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('request_time', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('delivery_time', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'CANCELLED')",
            name='chk_order_status',
        ),
    )
    # Pending queue: WHERE status = 'PENDING' ORDER BY request_time
    op.create_index('idx_orders_status_request_time', 'orders', ['status', 'request_time'])
    op.create_index('idx_orders_round_status', 'orders', ['round_id', 'status'])
    op.create_index('idx_orders_user_status', 'orders', ['user_id', 'status'])

    op.create_table(
        'order_items',
        sa.Column('item_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'order_id',
            sa.Integer(),
            sa.ForeignKey('orders.order_id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('item_name', sa.String(255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('size', sa.String(50), nullable=True),
        sa.Column('is_custom', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.CheckConstraint('quantity > 0', name='chk_order_item_quantity_positive'),
    )
    op.create_index('idx_order_items_order', 'order_items', ['order_id'])

    # No foreign key on order_id: assignments outlive order deletion
    op.create_table(
        'order_assignments',
        sa.Column('assignment_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('volunteer_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACCEPTED'),
        sa.Column('accepted_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('ACCEPTED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')",
            name='chk_assignment_status',
        ),
    )
    op.create_index(
        'uq_assignments_active_order',
        'order_assignments',
        ['order_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('ACCEPTED', 'IN_PROGRESS')"),
    )
    op.create_index('idx_assignments_order', 'order_assignments', ['order_id'])
    op.create_index(
        'idx_assignments_volunteer_status', 'order_assignments', ['volunteer_id', 'status']
    )


def downgrade() -> None:
    op.drop_table('order_assignments')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('round_signups')
    op.drop_table('rounds')
