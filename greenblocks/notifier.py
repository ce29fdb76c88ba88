"""Best-effort notifications. A failed send is logged and never reaches the caller."""
import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Optional

logger = logging.getLogger(__name__)

SUBJECTS = {
    "project_approved": 'Project "{name}" has been approved',
    "project_rejected": 'Project "{name}" requires attention',
    "inspection_scheduled": "Inspection scheduled for claim {claimId}",
    "credits_issued": "{approvedCredits} credits issued for claim {claimId}",
    "claim_rejected": "Claim {claimId} was rejected",
    "credits_purchased": "Purchase confirmed: {credits} credits from listing {listingId}",
}

BODIES = {
    "project_approved": "Your project \"{name}\" has been approved. You can now claim carbon credits for it.",
    "project_rejected": "Your project \"{name}\" was reviewed and rejected.\n\nReview comments:\n{reason}",
    "inspection_scheduled": "An on-site inspection for claim {claimId} is scheduled on {scheduledDate}.",
    "credits_issued": "{approvedCredits} credits were transferred to your wallet.\nTransaction: {txHash}",
    "claim_rejected": "Claim {claimId} was rejected.\n\nReason:\n{reason}",
    "credits_purchased": "You bought {credits} credits for {totalPrice} ETH.\nToken transfer: {txHash}",
}


class Notifier(ABC):
    @abstractmethod
    def send(self, recipient: str, subject: str, body: str) -> None:
        ...


class LogNotifier(Notifier):
    def send(self, recipient: str, subject: str, body: str) -> None:
        logger.info("notify %s: %s", recipient, subject)


class SmtpNotifier(Notifier):
    def __init__(self, host: str, port: int, user: Optional[str], password: Optional[str],
                 sender: Optional[str] = None, timeout: float = 30):
        self.host, self.port = host, port
        self.user, self.password = user, password
        self.sender = sender or f'"GreenBlocks Platform" <{user}>'
        self.timeout = timeout

    def send(self, recipient: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password or "")
            smtp.send_message(msg)


def notify(notifier: Optional[Notifier], recipient: Optional[str], event: str, **fields) -> bool:
    """Render ``event`` and send it; swallow and log any failure."""
    if notifier is None or not recipient:
        return False
    try:
        notifier.send(recipient, SUBJECTS[event].format(**fields), BODIES[event].format(**fields))
        return True
    except Exception as e:  # never propagates
        logger.warning("notification %r to %s failed: %s", event, recipient, e)
        return False
