"""
Collector package — listens to Telegram via the User API (MTProto/Telethon)
and stores senders, chats and messages in PostgreSQL.

Session handling lives in ``collector.session``; every database write goes
through ``collector.entity_store.EntityStore``.
"""
