from sqlalchemy import JSON, Column, Date, DateTime, Index, Integer, MetaData, String, Table, Text
from sqlalchemy.dialects.postgresql import JSONB

metadata = MetaData()

users = Table(
    'users',
    metadata,
    Column('id', String(32), primary_key=True),
    Column('email', String(254), nullable=False, unique=True),
    Column('password_hash', String(255), nullable=False),
    Column('role', String(10), nullable=False, default='USER'),
    Column('created_at', DateTime(timezone=True)),
)

employees = Table(
    'employees',
    metadata,
    Column('id', String(32), primary_key=True),
    Column('name', String(120), nullable=False),
    Column('category', String(4), nullable=False),
    Column('performance', Integer, nullable=False, default=100),
    Column('created_at', DateTime(timezone=True)),
)

day_entries = Table(
    'day_entries',
    metadata,
    Column('id', String(32), primary_key=True),
    Column('work_day', Date, nullable=False),
    Column('category', String(4), nullable=False),
    Column('title', String(200)),
    Column('work_text', Text, nullable=False, default=''),
    Column('drop_off', String(5)),
    Column('pick_up', String(5)),
    Column('aw', Integer, nullable=False, default=0),
    Column('created_by', String(32)),
    Column('created_at', DateTime(timezone=True)),
    Index('ix_day_entries_bucket', 'work_day', 'category'),
)

settings = Table(
    'settings',
    metadata,
    Column('id', Integer, primary_key=True),
    Column('timezone', String(64), nullable=False),
    Column('opening', JSON().with_variant(JSONB(), 'postgresql'), nullable=False),
    Column('base_aw_per_day', Integer, nullable=False, default=96),
    Column('updated_at', DateTime(timezone=True)),
)
