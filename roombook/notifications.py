"""Booking confirmations and account mail published to RabbitMQ."""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict

import pika

from .config import Settings, get_settings
from .models import Booking, Room, User

logger = logging.getLogger(__name__)

ACCOUNT_ACTIVATION = "account_activation"
PASSWORD_RESET = "password_reset"


def confirmation_message(user: User, room: Room, booking: Booking) -> Dict[str, Any]:
    return {
        "event": "booking_confirmed",
        "booking_id": booking.id,
        "user_id": user.id,
        "username": user.username,
        "email": user.email,
        "room_id": room.id,
        "room_code": room.room_code,
        "title": booking.title,
        "confirm_code": booking.confirm_code,
        "start_time": booking.start_time.isoformat(),
        "end_time": booking.end_time.isoformat(),
    }


def account_message(user: User, purpose: str, token: str, expires_at: datetime) -> Dict[str, Any]:
    return {
        "event": purpose,
        "user_id": user.id,
        "username": user.username,
        "email": user.email,
        "token": token,
        "expires_at": expires_at.isoformat(),
    }


class BookingNotifier(ABC):
    """Fire-and-forget sink for booking confirmations."""

    @abstractmethod
    def send_booking_confirmation(self, user: User, room: Room, booking: Booking) -> None:
        ...


class AccountNotifier(ABC):
    """Delivers activation and password reset tokens to the account owner."""

    @abstractmethod
    def send_account_token(self, user: User, purpose: str, token: str, expires_at: datetime) -> None:
        ...


class NullNotifier(BookingNotifier, AccountNotifier):
    def send_booking_confirmation(self, user: User, room: Room, booking: Booking) -> None:
        logger.info(
            "Booking %s confirmed for %s in %s (code %s), notifications disabled",
            booking.id,
            user.username,
            room.room_code,
            booking.confirm_code,
        )

    def send_account_token(self, user: User, purpose: str, token: str, expires_at: datetime) -> None:
        logger.info("Issued %s token for %s, notifications disabled", purpose, user.username)


class RabbitMQNotifier(BookingNotifier, AccountNotifier):
    """Publishes persistent messages a mail worker turns into emails."""

    def __init__(self, host: str, queue: str, account_queue: str = "accounts") -> None:
        self.host = host
        self.queue = queue
        self.account_queue = account_queue

    def send_booking_confirmation(self, user: User, room: Room, booking: Booking) -> None:
        self._publish(self.queue, confirmation_message(user, room, booking))
        logger.info("[RabbitMQ] Sent booking_confirmed for booking %s", booking.id)

    def send_account_token(self, user: User, purpose: str, token: str, expires_at: datetime) -> None:
        self._publish(self.account_queue, account_message(user, purpose, token, expires_at))
        logger.info("[RabbitMQ] Sent %s for user %s", purpose, user.id)

    def _publish(self, queue: str, message: Dict[str, Any]) -> None:
        connection = pika.BlockingConnection(pika.ConnectionParameters(host=self.host))
        try:
            channel = connection.channel()
            channel.queue_declare(queue=queue, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=queue,
                body=json.dumps(message),
                properties=pika.BasicProperties(delivery_mode=2),
            )
        finally:
            connection.close()


def build_notifier(settings: Settings | None = None) -> NullNotifier | RabbitMQNotifier:
    settings = settings or get_settings()
    if settings.notifications_enabled:
        return RabbitMQNotifier(settings.rabbitmq_host, settings.rabbitmq_queue, settings.rabbitmq_account_queue)
    return NullNotifier()


def get_notifier() -> NullNotifier | RabbitMQNotifier:
    """FastAPI dependency; tests override it with a recording notifier."""

    return build_notifier()
