"""
shadowrooms.db.schema
~~~~~~~~~~~~~~~~~~~~~

建表语句（规范方言，SQLite 后端由适配器翻译）。所有语句均可重复执行。
"""
from __future__ import annotations

SCHEMA: str = """
create table if not exists rooms (
    id text primary key,
    password_hash text not null,
    magic_token text unique not null,
    capacity integer not null,
    media_prefix text not null,
    created_at timestamptz not null,
    archived_at timestamptz,
    archive_location text
);

create index if not exists idx_rooms_archived_at on rooms (archived_at);

create table if not exists room_sessions (
    id text primary key,
    room_id text not null references rooms (id) on delete cascade,
    display_name text,
    address text,
    user_agent text,
    joined_at timestamptz not null,
    left_at timestamptz
);

create index if not exists idx_room_sessions_room on room_sessions (room_id);

create table if not exists messages (
    seq bigserial primary key,
    id text unique not null,
    room_id text not null references rooms (id) on delete cascade,
    kind text not null,
    content text not null,
    sender_id text not null,
    sender_name text,
    created_at timestamptz not null
);

create index if not exists idx_messages_room_seq on messages (room_id, seq);

create table if not exists media (
    id bigserial primary key,
    room_id text not null references rooms (id) on delete cascade,
    storage_key text unique not null,
    file_name text not null,
    mime_type text not null,
    size_bytes bigint not null,
    uploaded_at timestamptz not null
);

create index if not exists idx_media_room on media (room_id);

create table if not exists room_events (
    id bigserial primary key,
    room_id text not null,
    event_type text not null,
    address text,
    user_agent text,
    metadata text,
    created_at timestamptz not null
);

create index if not exists idx_room_events_room on room_events (room_id);

create table if not exists room_archives (
    id bigserial primary key,
    room_id text not null references rooms (id) on delete cascade,
    location text,
    encrypted boolean not null,
    algorithm text not null,
    message_count integer not null,
    participants text,
    payload text not null,
    created_at timestamptz not null,
    closed_at timestamptz not null
);

create index if not exists idx_room_archives_room on room_archives (room_id);
"""
