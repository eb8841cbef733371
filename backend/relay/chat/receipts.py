"""Delivery and read-receipt state machine.

A message moves through ``sent -> delivered -> read`` and never back.
Reading a message implies it was delivered, so a read receipt for a
message still in ``sent`` advances it to ``delivered`` (or straight
through to ``read`` when the reader was the last one missing).

The functions here are pure; persisting the outcome is the caller's job.
"""
from dataclasses import dataclass
from typing import FrozenSet, Iterable

from relay.store.schemas import DeliveryState, Message, advance


def recipients_of(message: Message, participant_ids: Iterable[str]) -> FrozenSet[str]:
    """Participants expected to read *message* (everyone but the sender)."""
    return frozenset(participant_ids) - {message.senderId}


def is_fully_read(message: Message, read_by: Iterable[str], participant_ids: Iterable[str]) -> bool:
    recipients = recipients_of(message, participant_ids)
    return bool(recipients) and recipients <= set(read_by)


@dataclass(frozen=True)
class ReadOutcome:
    """Result of applying one read receipt.

    Attributes:
        changed: False when the receipt was a no-op (sender or repeat).
        state: Delivery state after the receipt.
    """
    changed: bool
    state: DeliveryState

    @property
    def fully_read(self) -> bool:
        return self.state == DeliveryState.READ


def apply_read(message: Message, reader_id: str, participant_ids: Iterable[str]) -> ReadOutcome:
    """Apply a read receipt from *reader_id* to *message*.

    No-op when the reader sent the message or has already read it.
    """
    if reader_id == message.senderId or reader_id in message.readBy:
        return ReadOutcome(changed=False, state=message.deliveryState)

    target = (
        DeliveryState.READ
        if is_fully_read(message, message.readBy | {reader_id}, participant_ids)
        else DeliveryState.DELIVERED
    )
    return ReadOutcome(changed=True, state=advance(message.deliveryState, target))
