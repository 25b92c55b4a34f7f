import asyncio

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.config import settings
from app.core.exceptions import ConfigurationError
from app.core.logging import logger
from app.utils.retry import async_retry, CircuitBreaker


class EmailChannel:
    """Sends notification emails through AWS SES."""

    def __init__(self, sender: str = None, region_name: str = None, access_key_id: str = None,
                 secret_access_key: str = None, tries: int = 3, delay: float = 2):
        self.sender = settings.EMAIL_SENDER if sender is None else sender
        self.region_name = region_name or settings.AWS_REGION_NAME
        self.access_key_id = settings.AWS_ACCESS_KEY_ID if access_key_id is None else access_key_id
        self.secret_access_key = settings.AWS_SECRET_ACCESS_KEY if secret_access_key is None else secret_access_key
        self.circuit_breaker = CircuitBreaker("SES", failure_threshold=5, reset_timeout=60)
        self._send_with_retry = async_retry(
            tries=tries,
            delay=delay,
            backoff=2,
            exceptions=(ClientError, BotoCoreError),
            circuit_breaker=self.circuit_breaker,
        )(self._send_once)

    def is_enabled(self) -> bool:
        return bool(self.sender and self.access_key_id and self.secret_access_key)

    def _client(self):
        return boto3.client(
            "ses",
            region_name=self.region_name,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    async def _send_once(self, recipient: str, subject: str, body: str) -> str:
        ses_client = self._client()
        try:
            response = await asyncio.to_thread(
                ses_client.send_email,
                Source=self.sender,
                Destination={"ToAddresses": [recipient]},
                Message={
                    "Subject": {"Data": subject},
                    "Body": {"Text": {"Data": body}},
                },
            )
        except ClientError as e:
            logger.error("SES email send failed", error=str(e), recipient=recipient)
            raise  # Re-raise to trigger retry
        message_id = response["MessageId"]
        logger.info("Email sent via SES", message_id=message_id, recipient=recipient)
        return message_id

    async def send(self, recipient: str, subject: str, body: str) -> str:
        if not self.is_enabled():
            raise ConfigurationError("SES email channel is not configured")
        return await self._send_with_retry(recipient, subject, body)
