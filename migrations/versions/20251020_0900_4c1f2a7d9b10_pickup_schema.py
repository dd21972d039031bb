"""pickup schema

Revision ID: 4c1f2a7d9b10
Revises:
Create Date: 2025-10-20 09:00:12.418203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4c1f2a7d9b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_STATUS_SQL = "status IN ('pending', 'called')"


def upgrade():
    op.create_table(
        'parents',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('username', sa.String(length=64), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("role IN ('parent','family','other','teacher','admin','superadmin')", name='ck_parents_role_valid'),
        sa.CheckConstraint('email IS NOT NULL OR username IS NOT NULL', name='ck_parents_has_identifier'),
        sa.PrimaryKeyConstraint('id', name='pk_parents'),
    )
    op.create_index('ix_parents_email', 'parents', ['email'], unique=True)
    op.create_index('ix_parents_username', 'parents', ['username'], unique=True)

    op.create_table(
        'classes',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('grade', sa.String(length=32), nullable=False),
        sa.Column('teacher_name', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_classes'),
    )

    op.create_table(
        'students',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('first_name', sa.String(length=64), nullable=False),
        sa.Column('last_name', sa.String(length=64), nullable=False),
        sa.Column('class_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("status IN ('ACTIVE','GRADUATED','WITHDRAWN')", name='ck_students_status_valid'),
        sa.ForeignKeyConstraint(['class_id'], ['classes.id'], name='fk_students_class_id_classes'),
        sa.PrimaryKeyConstraint('id', name='pk_students'),
    )
    op.create_index('ix_students_class_id', 'students', ['class_id'])

    op.create_table(
        'student_parents',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('student_id', sa.Uuid(), nullable=False),
        sa.Column('parent_id', sa.Uuid(), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], name='fk_student_parents_student_id_students'),
        sa.ForeignKeyConstraint(['parent_id'], ['parents.id'], name='fk_student_parents_parent_id_parents'),
        sa.PrimaryKeyConstraint('id', name='pk_student_parents'),
        sa.UniqueConstraint('student_id', 'parent_id', name='uq_student_parents_pair'),
    )
    op.create_index('ix_student_parents_student_id', 'student_parents', ['student_id'])
    op.create_index('ix_student_parents_parent_id', 'student_parents', ['parent_id'])

    op.create_table(
        'pickup_authorizations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('student_id', sa.Uuid(), nullable=False),
        sa.Column('authorizing_parent_id', sa.Uuid(), nullable=False),
        sa.Column('authorized_parent_id', sa.Uuid(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('allowed_days_of_week', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('start_date <= end_date', name='ck_pickup_authorizations_window_ordered'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], name='fk_pickup_authorizations_student_id_students'),
        sa.ForeignKeyConstraint(['authorizing_parent_id'], ['parents.id'], name='fk_pickup_authorizations_authorizing_parent_id_parents'),
        sa.ForeignKeyConstraint(['authorized_parent_id'], ['parents.id'], name='fk_pickup_authorizations_authorized_parent_id_parents'),
        sa.PrimaryKeyConstraint('id', name='pk_pickup_authorizations'),
    )
    op.create_index('ix_pickup_authorizations_student_id', 'pickup_authorizations', ['student_id'])
    op.create_index('ix_pickup_authorizations_authorizing_parent_id', 'pickup_authorizations', ['authorizing_parent_id'])
    op.create_index('ix_pickup_authorizations_authorized_parent_id', 'pickup_authorizations', ['authorized_parent_id'])

    op.create_table(
        'pickup_requests',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('student_id', sa.Uuid(), nullable=False),
        sa.Column('parent_id', sa.Uuid(), nullable=False),
        sa.Column('request_time', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('called_time', sa.DateTime(), nullable=True),
        sa.Column('completed_time', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.CheckConstraint("status IN ('pending','called','completed','cancelled')", name='ck_pickup_requests_status_valid'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], name='fk_pickup_requests_student_id_students'),
        sa.ForeignKeyConstraint(['parent_id'], ['parents.id'], name='fk_pickup_requests_parent_id_parents'),
        sa.PrimaryKeyConstraint('id', name='pk_pickup_requests'),
    )
    op.create_index('ix_pickup_requests_student_id', 'pickup_requests', ['student_id'])
    op.create_index('ix_pickup_requests_parent_id', 'pickup_requests', ['parent_id'])
    op.create_index('ix_pickup_requests_status', 'pickup_requests', ['status'])
    # At most one pending/called request per student
    op.create_index(
        'uq_pickup_requests_active_student',
        'pickup_requests',
        ['student_id'],
        unique=True,
        sqlite_where=sa.text(ACTIVE_STATUS_SQL),
        postgresql_where=sa.text(ACTIVE_STATUS_SQL),
    )

    op.create_table(
        'pickup_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('request_id', sa.Uuid(), nullable=False),
        sa.Column('student_id', sa.Uuid(), nullable=False),
        sa.Column('parent_id', sa.Uuid(), nullable=False),
        sa.Column('request_time', sa.DateTime(), nullable=False),
        sa.Column('called_time', sa.DateTime(), nullable=True),
        sa.Column('completed_time', sa.DateTime(), nullable=False),
        sa.Column('pickup_duration_minutes', sa.Integer(), nullable=True),
        sa.Column('completed_by', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("completed_by IN ('staff','sweeper')", name='ck_pickup_history_completed_by_valid'),
        sa.ForeignKeyConstraint(['request_id'], ['pickup_requests.id'], name='fk_pickup_history_request_id_pickup_requests'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], name='fk_pickup_history_student_id_students'),
        sa.ForeignKeyConstraint(['parent_id'], ['parents.id'], name='fk_pickup_history_parent_id_parents'),
        sa.PrimaryKeyConstraint('id', name='pk_pickup_history'),
        sa.UniqueConstraint('request_id', name='uq_pickup_history_request_id'),
    )
    op.create_index('ix_pickup_history_student_id', 'pickup_history', ['student_id'])
    op.create_index('ix_pickup_history_parent_id', 'pickup_history', ['parent_id'])
    op.create_index('ix_pickup_history_completed_time', 'pickup_history', ['completed_time'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('subject', sa.String(length=255), nullable=True),
        sa.Column('body', sa.String(length=2000), nullable=False),
        sa.Column('to_parent_id', sa.Uuid(), nullable=False),
        sa.Column('request_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_notifications'),
    )
    op.create_index('ix_notifications_to_parent_id', 'notifications', ['to_parent_id'])
    op.create_index('ix_notifications_request_id', 'notifications', ['request_id'])


def downgrade():
    op.drop_table('notifications')
    op.drop_table('pickup_history')
    op.drop_index('uq_pickup_requests_active_student', table_name='pickup_requests')
    op.drop_table('pickup_requests')
    op.drop_table('pickup_authorizations')
    op.drop_table('student_parents')
    op.drop_table('students')
    op.drop_table('classes')
    op.drop_table('parents')
