"""
Renter notifications.

Sending is best-effort everywhere it is used: callers log failures and
carry on, a notification never rolls back a payment or a sweep.
``SmtpNotifier`` runs the blocking SMTP session in a worker thread;
``LoggingNotifier`` is used when no SMTP host is configured.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from email.message import EmailMessage

logger = logging.getLogger(__name__)


def _day(value: date) -> str:
    return value.strftime("%d/%m/%Y")


@dataclass(frozen=True)
class ReservationConfirmation:
    email: str
    renter_name: str
    vehicle: str
    pickup_date: date
    dropoff_date: date
    total_price: float
    amount_paid: float
    currency: str

    @property
    def remaining(self) -> float:
        return round(self.total_price - self.amount_paid, 3)


class Notifier(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> None: ...

    async def reservation_confirmed(self, data: ReservationConfirmation) -> None:
        body = (
            f"Bonjour {data.renter_name},\n\n"
            f"Votre réservation du véhicule {data.vehicle} est confirmée.\n"
            f"Du {_day(data.pickup_date)} au {_day(data.dropoff_date)}.\n"
            f"Total: {data.total_price:.3f} {data.currency}\n"
            f"Avance: {data.amount_paid:.3f} {data.currency}\n"
            f"Reste à payer: {data.remaining:.3f} {data.currency}\n"
        )
        await self.send(data.email, "CONFIRMATION DE RÉSERVATION", body)

    async def prolongation_payment_link(
        self,
        email: str,
        pay_url: str,
        vehicle: str,
        new_dropoff_date: date,
        additional_days: int,
        additional_cost: float,
        currency: str,
    ) -> None:
        body = (
            f"Votre demande de prolongation pour {vehicle} a été acceptée.\n"
            f"Nouvelle date de restitution: {_day(new_dropoff_date)} "
            f"(+{additional_days} jours).\n"
            f"Montant à régler: {additional_cost:.3f} {currency}\n"
            f"Lien de paiement: {pay_url}\n"
        )
        await self.send(email, "LIEN DE PAIEMENT - PROLONGATION", body)

    async def prolongation_rejected(self, email: str) -> None:
        body = (
            "Votre demande de prolongation n'a pas pu être acceptée.\n"
            "Merci de contacter notre agence pour plus d'informations.\n"
        )
        await self.send(email, "REJET DE DEMANDE DE PROLONGATION", body)


class SmtpNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        sender: str,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout = timeout

    async def send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        await asyncio.to_thread(self._deliver, message)
        logger.info("Mail '%s' sent to %s", subject, to)

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)


class LoggingNotifier(Notifier):
    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info("MAIL to %s: %s\n%s", to, subject, body)


def build_notifier(settings) -> Notifier:
    """SMTP when a host is configured, otherwise log the messages."""
    if not settings.smtp_host:
        return LoggingNotifier()
    return SmtpNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_user,
        password=settings.smtp_password,
        sender=settings.mail_from,
    )
