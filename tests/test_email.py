import logging
from datetime import timedelta

import pytest
from botocore.exceptions import ClientError

from app.core.exceptions import ConfigurationError
from app.services.email import EmailChannel
from app.utils.retry import CircuitBreakerOpenException
from app.utils.time import utcnow

THROTTLED = ClientError({"Error": {"Code": "Throttling"}}, "SendEmail")


@pytest.fixture
def mock_ses_client(mocker):
    mock_boto_client = mocker.Mock()
    mock_boto_client.send_email.return_value = {"MessageId": "mock-message-id"}
    mocker.patch("boto3.client", return_value=mock_boto_client)
    return mock_boto_client

def make_channel(tries=1):
    return EmailChannel(sender="no-reply@repairshop.example", access_key_id="key", secret_access_key="secret",
                        tries=tries, delay=0)

@pytest.mark.asyncio
async def test_send_returns_ses_message_id(mock_ses_client):
    channel = make_channel()
    assert await channel.send("tech@example.com", "Subject", "Body") == "mock-message-id"
    kwargs = mock_ses_client.send_email.call_args.kwargs
    assert kwargs["Source"] == "no-reply@repairshop.example"
    assert kwargs["Message"]["Subject"]["Data"] == "Subject"

@pytest.mark.asyncio
async def test_unconfigured_channel_refuses_to_send(mock_ses_client):
    channel = EmailChannel(sender="", access_key_id="", secret_access_key="")
    assert channel.is_enabled() is False
    with pytest.raises(ConfigurationError):
        await channel.send("tech@example.com", "Subject", "Body")
    mock_ses_client.send_email.assert_not_called()

@pytest.mark.asyncio
async def test_transient_errors_are_retried(mock_ses_client, caplog):
    mock_ses_client.send_email.side_effect = [THROTTLED, THROTTLED, {"MessageId": "third-time-lucky"}]
    channel = make_channel(tries=3)

    with caplog.at_level(logging.WARNING):
        assert await channel.send("tech@example.com", "Subject", "Body") == "third-time-lucky"
    assert mock_ses_client.send_email.call_count == 3
    assert "Retrying after exception" in caplog.text

@pytest.mark.asyncio
async def test_circuit_breaker_open_and_block(mock_ses_client, caplog):
    mock_ses_client.send_email.side_effect = THROTTLED
    channel = make_channel()
    breaker = channel.circuit_breaker

    with caplog.at_level(logging.WARNING):
        for _ in range(breaker.failure_threshold):
            with pytest.raises(ClientError):
                await channel.send("tech@example.com", "Subject", "Body")
        assert breaker.state == "OPEN"
        assert "Circuit Breaker OPEN" in caplog.text

    caplog.clear()

    with caplog.at_level(logging.WARNING):
        with pytest.raises(CircuitBreakerOpenException):
            await channel.send("tech@example.com", "Subject", "Body")
        assert "Circuit Breaker OPEN, blocking call" in caplog.text
    assert mock_ses_client.send_email.call_count == breaker.failure_threshold

@pytest.mark.asyncio
async def test_circuit_breaker_half_open_and_close(mock_ses_client, caplog):
    channel = make_channel()
    breaker = channel.circuit_breaker
    breaker.failures = breaker.failure_threshold
    breaker.state = "OPEN"
    breaker.last_failure_time = utcnow() - timedelta(seconds=breaker.reset_timeout + 1)

    with caplog.at_level(logging.INFO):
        assert await channel.send("tech@example.com", "Subject", "Body") == "mock-message-id"
        assert breaker.state == "CLOSED"
        assert "Circuit Breaker HALF-OPEN" in caplog.text
        assert "Circuit Breaker CLOSED" in caplog.text
    assert breaker.failures == 0

@pytest.mark.asyncio
async def test_circuit_breaker_half_open_and_reopen(mock_ses_client, caplog):
    mock_ses_client.send_email.side_effect = THROTTLED
    channel = make_channel()
    breaker = channel.circuit_breaker
    breaker.failures = breaker.failure_threshold
    breaker.state = "OPEN"
    breaker.last_failure_time = utcnow() - timedelta(seconds=breaker.reset_timeout + 1)

    with caplog.at_level(logging.WARNING):
        with pytest.raises(ClientError):
            await channel.send("tech@example.com", "Subject", "Body")
        assert breaker.state == "OPEN"

    caplog.clear()

    with caplog.at_level(logging.WARNING):
        with pytest.raises(CircuitBreakerOpenException):
            await channel.send("tech@example.com", "Subject", "Body")
        assert "Circuit Breaker OPEN, blocking call" in caplog.text

def test_channels_do_not_share_breaker_state():
    first, second = make_channel(), make_channel()
    first.circuit_breaker.state = "OPEN"
    assert second.circuit_breaker.state == "CLOSED"
