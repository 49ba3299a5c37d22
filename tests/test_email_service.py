"""
Tests for the SES-backed EmailService. The boto3 client is mocked.
"""

import pytest
from botocore.exceptions import ClientError

from app.models.campaign import EmailMessage
from app.services.email_service import EmailService, LogEmailDelivery


def _message(**overrides):
    fields = {
        "from_address": "Acme Shop <news@acme.test>",
        "to": "ada@x.com",
        "subject": "Spring sale",
        "html": "<p>Hello</p>",
    }
    fields.update(overrides)
    return EmailMessage(**fields)


def _client_error(code, message):
    return ClientError({"Error": {"Code": code, "Message": message}}, "SendEmail")


@pytest.fixture
def ses_client(mocker):
    client = mocker.Mock()
    client.send_email.return_value = {"MessageId": "ses-message-1"}
    return client


@pytest.mark.asyncio
async def test_send_passes_message_to_ses(ses_client):
    # Arrange
    service = EmailService(
        region="us-east-1",
        support_email="support@acme.test",
        configuration_set="campaign-events",
        ses_client=ses_client,
    )

    # Act
    result = await service.send(_message())

    # Assert
    assert result.accepted is True
    assert result.message_id == "ses-message-1"
    kwargs = ses_client.send_email.call_args.kwargs
    assert kwargs["FromEmailAddress"] == "Acme Shop <news@acme.test>"
    assert kwargs["Destination"] == {"ToAddresses": ["ada@x.com"]}
    assert kwargs["Content"]["Simple"]["Subject"]["Data"] == "Spring sale"
    assert kwargs["Content"]["Simple"]["Body"]["Html"]["Data"] == "<p>Hello</p>"
    assert kwargs["ReplyToAddresses"] == ["support@acme.test"]
    assert kwargs["ConfigurationSetName"] == "campaign-events"


@pytest.mark.asyncio
async def test_send_without_configuration_set_omits_it(ses_client):
    service = EmailService(region="us-east-1", support_email="support@acme.test", ses_client=ses_client)

    await service.send(_message(reply_to="owner@acme.test"))

    kwargs = ses_client.send_email.call_args.kwargs
    assert "ConfigurationSetName" not in kwargs
    assert kwargs["ReplyToAddresses"] == ["owner@acme.test"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code, message, expected",
    [
        ("MessageRejected", "Address blacklisted", "Email rejected: Address blacklisted"),
        ("MailFromDomainNotVerifiedException", "nope", "Sender domain not verified with AWS SES"),
        ("AccountSendingPausedException", "paused", "Account sending paused - likely due to bounce/complaint rate"),
        ("Throttling", "Rate exceeded", "Email delivery failed: Rate exceeded"),
    ],
)
async def test_ses_errors_become_rejections(ses_client, code, message, expected):
    # Arrange
    ses_client.send_email.side_effect = _client_error(code, message)
    service = EmailService(region="us-east-1", support_email="support@acme.test", ses_client=ses_client)

    # Act
    result = await service.send(_message())

    # Assert
    assert result.accepted is False
    assert result.error == expected


@pytest.mark.asyncio
async def test_log_delivery_records_messages():
    delivery = LogEmailDelivery()

    result = await delivery.send(_message())

    assert result.accepted is True
    assert result.message_id
    assert [m.to for m in delivery.sent] == ["ada@x.com"]


@pytest.mark.asyncio
async def test_close_shuts_down_worker_threads(ses_client):
    service = EmailService(region="us-east-1", support_email="support@acme.test", ses_client=ses_client)
    await service.send(_message())

    await service.close()

    with pytest.raises(RuntimeError):
        service.executor.submit(print)
