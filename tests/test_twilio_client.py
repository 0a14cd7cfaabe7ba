import pytest
from unittest.mock import MagicMock
from twilio.base.exceptions import TwilioRestException

from lib.error_handler import AppError
from lib.twilio_client import RATE_LIMITED_SID, SMS_COOLDOWN_KEY, TwilioClient, normalize_phone_e164

@pytest.fixture
def rest_client():
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid='SM999', status='queued')
    return client

@pytest.fixture
def database():
    database = MagicMock()
    database.is_rate_limited.return_value = False
    return database

@pytest.fixture
def twilio(rest_client, database):
    return TwilioClient(
        'AC123', 'token', '+15550002222',
        database=database,
        monitor=MagicMock(),
        cooldown_seconds=600,
        client=rest_client
    )

@pytest.mark.parametrize('raw, expected', [
    ('(555) 123-4567', '+15551234567'),
    ('15551234567', '+15551234567'),
    ('+44 20 7946 0958', '+442079460958'),
    ('', ''),
])
def test_normalize_phone_e164(raw, expected):
    assert normalize_phone_e164(raw) == expected

def test_send_message_starts_cooldown(twilio, rest_client, database):
    result = twilio.send_message('+15551234567', 'Hello', request_id='req-1', business_id='biz-1')

    assert result.sid == 'SM999'
    assert not result.rate_limited
    rest_client.messages.create.assert_called_once_with(body='Hello', from_='+15550002222', to='+15551234567')
    database.set_rate_limit.assert_called_once_with('+15551234567', SMS_COOLDOWN_KEY, 600)
    twilio.monitor.track_sms_event.assert_called_once()
    assert twilio.monitor.track_sms_event.call_args.kwargs['status'] == 'queued'

def test_cooldown_skips_send(twilio, rest_client, database):
    database.is_rate_limited.return_value = True

    result = twilio.send_message('+15551234567', 'Hello')

    assert result.sid == RATE_LIMITED_SID
    assert result.rate_limited
    rest_client.messages.create.assert_not_called()

def test_bypass_ignores_cooldown(twilio, rest_client, database):
    database.is_rate_limited.return_value = True

    result = twilio.send_message('+15559990000', 'Alert', bypass_rate_limit=True)

    assert result.sid == 'SM999'
    database.is_rate_limited.assert_not_called()
    database.set_rate_limit.assert_not_called()

def test_cooldown_store_failure_does_not_block(twilio, rest_client, database):
    database.is_rate_limited.side_effect = Exception("connection refused")

    result = twilio.send_message('+15551234567', 'Hello')

    assert result.sid == 'SM999'

def test_twilio_error_raises_app_error(twilio, rest_client):
    rest_client.messages.create.side_effect = TwilioRestException(
        400, '/Messages.json', msg='The To number is not valid', code=21211
    )

    with pytest.raises(AppError) as exc_info:
        twilio.send_message('+1555', 'Hello')

    assert exc_info.value.status_code == 502
    assert 'not a valid phone number' in exc_info.value.user_message
    tracked = twilio.monitor.track_sms_event.call_args.kwargs
    assert tracked['status'] == 'failed'
    assert tracked['error_code'] == '21211'

def test_validate_request_requires_signature(twilio):
    assert twilio.validate_request('https://example.com/api/new-message', {}, None) is False
