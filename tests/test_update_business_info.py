from lib.error_handler import AppError

FORM = {
    'name': 'Mock Business',
    'phoneNumber': '(555) 000-1111',
    'industry': 'restaurant',
    'hoursJson': {'Monday': '9-5'},
}

def test_missing_fields_are_listed(test_client):
    response = test_client.post('/api/update-business-info', json={'name': 'Mock Business'})

    assert response.status_code == 400
    data = response.get_json()
    assert data['error'] == 'Missing required fields'
    assert data['missingFields'] == ['phoneNumber', 'industry', 'hoursJson']

def test_creates_business_with_normalised_phone(test_client, mock_database):
    response = test_client.post('/api/update-business-info', json={
        **FORM,
        'onlineOrderingLink': 'https://order.mockbusiness.com',
        'faqs': [{'question': 'Parking?', 'answer': 'Out back.'}],
        'teamSize': '4',
    })

    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'id': 'biz-new'}
    fields = mock_database.create_business.call_args.args[0]
    assert fields['public_phone'] == '+15550001111'
    assert fields['online_ordering_url'] == 'https://order.mockbusiness.com'
    assert fields['faqs_json'] == '[{"question": "Parking?", "answer": "Out back."}]'
    assert fields['team_size'] == 4
    assert 'custom_settings' not in fields

def test_custom_auto_text_merges_existing_settings(test_client, mock_database):
    response = test_client.post('/api/update-business-info', json={
        **FORM,
        'recordId': 'biz-123',
        'customAutoTextMessage': 'Back in five!',
    })

    assert response.status_code == 200
    business_id, fields = mock_database.update_business.call_args.args
    assert business_id == 'biz-123'
    assert fields['custom_settings'] == {'ownerPhone': '+15559990000', 'autoReplyMessage': 'Back in five!'}

def test_unknown_record_returns_404(test_client, mock_database):
    mock_database.update_business.side_effect = AppError("Business missing not found", status_code=404)

    response = test_client.post('/api/update-business-info', json={**FORM, 'recordId': 'missing'})

    assert response.status_code == 404
