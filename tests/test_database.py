import pytest
from unittest.mock import MagicMock

from lib.database import Database
from lib.error_handler import AppError

@pytest.fixture
def supabase():
    return MagicMock()

def query(supabase):
    return supabase.table.return_value

def test_business_lookup_matches_either_phone(supabase):
    chain = query(supabase).select.return_value.or_.return_value.order.return_value
    chain.execute.return_value = MagicMock(data=[{'id': 'newest'}, {'id': 'older'}])

    business = Database(supabase).get_business_by_phone('+15550001111')

    assert business == {'id': 'newest'}
    supabase.table.assert_called_with('businesses')
    query(supabase).select.return_value.or_.assert_called_once_with(
        'public_phone.eq.+15550001111,twilio_phone.eq.+15550001111'
    )
    query(supabase).select.return_value.or_.return_value.order.assert_called_once_with('created_at', desc=True)

def test_business_lookup_no_match(supabase):
    chain = query(supabase).select.return_value.or_.return_value.order.return_value
    chain.execute.return_value = MagicMock(data=[])

    assert Database(supabase).get_business_by_phone('+15550001111') is None

def test_business_lookup_error_raises(supabase):
    query(supabase).select.side_effect = Exception("connection reset")

    with pytest.raises(AppError) as exc_info:
        Database(supabase).get_business_by_phone('+15550001111')

    assert exc_info.value.status_code == 500

def test_log_call_event_never_raises(supabase):
    query(supabase).insert.side_effect = Exception("insert failed")

    assert Database(supabase).log_call_event({'event_type': 'voice.missed'}) is None

def test_rate_limit_upsert(supabase):
    Database(supabase).set_rate_limit('+15551234567', 'sms_cooldown', 600)

    record = query(supabase).upsert.call_args.args[0]
    assert record['phone'] == '+15551234567'
    assert record['key'] == 'sms_cooldown'
    assert query(supabase).upsert.call_args.kwargs == {'on_conflict': 'phone,key'}

def test_rate_limit_active(supabase):
    chain = query(supabase).select.return_value.eq.return_value.eq.return_value.gt.return_value.limit.return_value
    chain.execute.return_value = MagicMock(data=[{'phone': '+15551234567'}])

    assert Database(supabase).is_rate_limited('+15551234567', 'sms_cooldown') is True
