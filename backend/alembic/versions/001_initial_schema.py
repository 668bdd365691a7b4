"""initial incident desk schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00

Roles and scoped role assignments, events, incidents with their comments,
related files and tags, the audit log and the blind search index.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'organizations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)

    op.create_table(
        'events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_events_slug', 'events', ['slug'], unique=True)
    op.create_index('ix_events_organization_id', 'events', ['organization_id'])

    op.create_table(
        'roles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('scope', sa.String(20), nullable=False),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
    )
    op.create_index('ix_roles_name', 'roles', ['name'], unique=True)

    op.create_table(
        'user_roles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role_id', sa.String(36), sa.ForeignKey('roles.id'), nullable=False),
        sa.Column('scope_type', sa.String(20), nullable=False),
        sa.Column('scope_id', sa.String(36), nullable=False),
        sa.Column('granted_by_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('granted_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id', 'role_id', 'scope_type', 'scope_id', name='user_role_unique'),
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])

    op.create_table(
        'tags',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(36), sa.ForeignKey('events.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('color', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('event_id', 'name', name='tag_event_name_unique'),
    )
    op.create_index('ix_tags_event_id', 'tags', ['event_id'])

    op.create_table(
        'incidents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(36), sa.ForeignKey('events.id'), nullable=False),
        sa.Column('reporter_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column(
            'assigned_responder_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True
        ),
        sa.Column('title', sa.String(70), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('state', sa.String(20), nullable=False),
        sa.Column('severity', sa.String(20), nullable=True),
        sa.Column('resolution', sa.Text(), nullable=True),
        sa.Column('incident_at', sa.DateTime(), nullable=True),
        sa.Column('parties', sa.Text(), nullable=True),
        sa.Column('location', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_incidents_event_id', 'incidents', ['event_id'])
    op.create_index('ix_incidents_reporter_id', 'incidents', ['reporter_id'])
    op.create_index('ix_incidents_assigned_responder_id', 'incidents', ['assigned_responder_id'])
    op.create_index('ix_incidents_state', 'incidents', ['state'])
    op.create_index('ix_incidents_created_at', 'incidents', ['created_at'])

    op.create_table(
        'incident_tags',
        sa.Column('incident_id', sa.String(36), sa.ForeignKey('incidents.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tag_id', sa.String(36), sa.ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True),
    )

    op.create_table(
        'incident_comments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('incident_id', sa.String(36), sa.ForeignKey('incidents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('author_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('visibility', sa.String(20), nullable=False),
        sa.Column('is_markdown', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_incident_comments_incident_id', 'incident_comments', ['incident_id'])
    op.create_index('ix_incident_comments_author_id', 'incident_comments', ['author_id'])
    op.create_index('ix_incident_comments_created_at', 'incident_comments', ['created_at'])

    op.create_table(
        'related_files',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('incident_id', sa.String(36), sa.ForeignKey('incidents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('filename', sa.String(255), nullable=False),
        sa.Column('mimetype', sa.String(100), nullable=False),
        sa.Column('size', sa.Integer(), nullable=False),
        sa.Column('data', sa.LargeBinary(), nullable=False),
        sa.Column('uploader_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_related_files_incident_id', 'related_files', ['incident_id'])

    # Append-only; deliberately no foreign keys
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(36), nullable=True),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('action', sa.String(255), nullable=False),
        sa.Column('target_type', sa.String(50), nullable=False),
        sa.Column('target_id', sa.String(36), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_logs_event_id', 'audit_logs', ['event_id'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_target_id', 'audit_logs', ['target_id'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])

    op.create_table(
        'search_tokens',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('target_type', sa.String(20), nullable=False),
        sa.Column('target_id', sa.String(36), nullable=False),
        sa.Column('field', sa.String(50), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False),
    )
    op.create_index('ix_search_tokens_target_id', 'search_tokens', ['target_id'])
    op.create_index('ix_search_tokens_lookup', 'search_tokens', ['target_type', 'field', 'token_hash'])


def downgrade():
    op.drop_table('search_tokens')
    op.drop_table('audit_logs')
    op.drop_table('related_files')
    op.drop_table('incident_comments')
    op.drop_table('incident_tags')
    op.drop_table('incidents')
    op.drop_table('tags')
    op.drop_table('user_roles')
    op.drop_table('roles')
    op.drop_table('events')
    op.drop_table('organizations')
    op.drop_table('users')
