"""Persistence collaborators for the relay.

Contracts:
    - SubjectStore, ConversationStore, MessageStore (``base.py``)

Implementations:
    - ChatStore: DuckDB-backed store implementing all three (``service.py``)
"""
