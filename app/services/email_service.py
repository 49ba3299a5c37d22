# app/services/email_service.py - Email delivery collaborators (AWS SES + log-only)
import boto3
from botocore.exceptions import ClientError
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List
from app.models.campaign import EmailMessage, DeliveryResult
import logging
import asyncio
import uuid
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)

class EmailDelivery(ABC):
    """send({from, to, subject, html}) -> {accepted, error?}"""

    @abstractmethod
    async def send(self, message: EmailMessage) -> DeliveryResult:
        ...

    async def close(self) -> None:
        pass

class EmailService(EmailDelivery):
    def __init__(
        self,
        region: str,
        support_email: str,
        configuration_set: Optional[str] = None,
        ses_client=None,
        max_workers: int = 5
    ):
        logger.info("=== INITIALIZING EMAIL SERVICE ===")
        logger.info(f"AWS Region: {region}")
        logger.info(f"Support Email: {support_email}")

        self.ses_client = ses_client or boto3.client('sesv2', region_name=region)
        self.region = region
        self.support_email = support_email
        self.configuration_set = configuration_set
        self.executor = ThreadPoolExecutor(max_workers=max_workers)

    async def send(self, message: EmailMessage) -> DeliveryResult:
        """Send a rendered message through SES without blocking the event loop"""
        loop = asyncio.get_running_loop()
        try:
            # Run SES call in thread pool to avoid blocking
            result = await loop.run_in_executor(
                self.executor,
                self._send_email_ses,
                message
            )
        except ValueError as e:
            return DeliveryResult(accepted=False, error=str(e))

        return DeliveryResult(accepted=True, message_id=result.get('message_id'))

    async def close(self) -> None:
        """Wait for in-flight SES calls, then release the worker threads"""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.executor.shutdown)
        logger.info("Email service executor shut down")

    def _send_email_ses(self, message: EmailMessage) -> Dict[str, Any]:
        """Send email using AWS SES"""
        try:
            email_params = {
                'FromEmailAddress': message.from_address,
                'Destination': {
                    'ToAddresses': [message.to]
                },
                'Content': {
                    'Simple': {
                        'Subject': {
                            'Data': message.subject,
                            'Charset': 'UTF-8'
                        },
                        'Body': {
                            'Html': {
                                'Data': message.html,
                                'Charset': 'UTF-8'
                            }
                        }
                    }
                },
                'ReplyToAddresses': [message.reply_to or self.support_email]
            }
            if self.configuration_set:
                email_params['ConfigurationSetName'] = self.configuration_set

            response = self.ses_client.send_email(**email_params)

            logger.info(f"📨 SES accepted email to {message.to}: {response.get('MessageId', 'No Message ID')}")
            return {
                'success': True,
                'message_id': response.get('MessageId'),
                'to_email': message.to
            }

        except ClientError as e:
            error_code = e.response['Error']['Code']
            error_message = e.response['Error']['Message']

            logger.error(f"🚨 SES client error {error_code} for {message.to}: {error_message}")

            if error_code == 'MessageRejected':
                raise ValueError(f"Email rejected: {error_message}")
            elif error_code == 'MailFromDomainNotVerifiedException':
                raise ValueError("Sender domain not verified with AWS SES")
            elif error_code == 'SendingPausedException':
                raise ValueError("SES sending is paused - check your account status")
            elif error_code == 'AccountSendingPausedException':
                raise ValueError("Account sending paused - likely due to bounce/complaint rate")
            else:
                raise ValueError(f"Email delivery failed: {error_message}")

class LogEmailDelivery(EmailDelivery):
    """Accepts every message and keeps it in memory. Used for local runs."""

    def __init__(self):
        self.sent: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> DeliveryResult:
        self.sent.append(message)
        message_id = str(uuid.uuid4())
        logger.info(f"Email to {message.to} recorded locally ({message_id})")
        return DeliveryResult(accepted=True, message_id=message_id)
