import io
from datetime import datetime, timedelta, timezone


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'healthy'


def test_signup_creates_customer_with_zero_balance(client, supabase):
    response = client.post('/api/auth/signup', json={'email': 'new@example.com', 'password': 'secret123'})
    assert response.status_code == 201
    user_id = response.get_json()['user']['id']
    profile = supabase.get('profiles', user_id)
    assert profile['credit_balance'] == 0
    assert profile['similarity_credit_balance'] == 0
    [role] = supabase.rows('user_roles')
    assert (role['user_id'], role['role']) == (user_id, 'customer')


def test_login_and_current_user(client, make_user):
    user = make_user(credits=3)
    login = client.post('/api/auth/login', json={'email': user.email, 'password': 'pw'})
    assert login.status_code == 200
    assert login.get_json()['session']['access_token'] == user.token

    me = client.get('/api/auth/user', headers=user.headers).get_json()['user']
    assert me['credit_balance'] == 3
    assert me['role'] == 'customer'


def test_protected_routes_need_a_token(client, supabase):
    assert client.get('/api/documents').status_code == 401
    assert client.get('/api/documents', headers={'Authorization': 'Bearer forged'}).status_code == 401


def test_customer_upload_and_listing(client, make_user, make_document):
    customer = make_user(credits=1)
    make_document(user_id='someone-else')

    response = client.post('/api/documents', headers=customer.headers, content_type='multipart/form-data',
                           data={'file': (io.BytesIO(b'content'), 'Essay.docx')})
    assert response.status_code == 201

    listed = client.get('/api/documents', headers=customer.headers).get_json()['documents']
    assert [d['file_name'] for d in listed] == ['Essay.docx']

    again = client.post('/api/documents', headers=customer.headers, content_type='multipart/form-data',
                        data={'file': (io.BytesIO(b'content'), 'Second.docx')})
    assert again.status_code == 402


def test_customer_cannot_read_other_documents(client, make_user, make_document):
    customer = make_user()
    document = make_document(user_id='someone-else')
    assert client.get(f"/api/documents/{document['id']}", headers=customer.headers).status_code == 404


def test_staff_status_update_with_report_files(client, make_user, make_document, supabase):
    staff = make_user(role='staff')
    document = make_document(user_id=make_user().id, status='in_progress', assigned_staff_id=staff.id)

    missing = client.post(f"/api/documents/{document['id']}/status", headers=staff.headers,
                          json={'status': 'completed'})
    assert missing.status_code == 400

    response = client.post(
        f"/api/documents/{document['id']}/status",
        headers=staff.headers,
        content_type='multipart/form-data',
        data={
            'status': 'completed',
            'similarity_percentage': '14',
            'ai_percentage': '2',
            'similarity_report': (io.BytesIO(b'%PDF sim'), 'sim.pdf'),
            'ai_report': (io.BytesIO(b'%PDF ai'), 'ai.pdf'),
        },
    )
    assert response.status_code == 200
    stored = supabase.get('documents', document['id'])
    assert stored['status'] == 'completed'
    assert stored['ai_percentage'] == 2


def test_rejected_clear_leaves_reports_in_place(client, make_user, make_document, supabase):
    staff = make_user(role='staff')
    owner = make_user()
    document = make_document(user_id=owner.id, status='completed',
                             similarity_report_path='o/d_similarity.pdf', ai_report_path='o/d_ai.pdf')
    reports = supabase.storage.from_('reports').files
    reports.update({'o/d_similarity.pdf': b'SIM', 'o/d_ai.pdf': b'AI'})

    response = client.post(
        f"/api/documents/{document['id']}/status",
        headers=staff.headers,
        content_type='multipart/form-data',
        data={'status': 'completed', 'clear_ai_report': 'true'},
    )
    assert response.status_code == 400
    assert 'ai_report_path' in response.get_json()['message']
    assert reports == {'o/d_similarity.pdf': b'SIM', 'o/d_ai.pdf': b'AI'}
    assert supabase.get('documents', document['id'])['ai_report_path'] == 'o/d_ai.pdf'


def test_rejected_completion_does_not_overwrite_stored_report(client, make_user, make_document, supabase):
    staff = make_user(role='staff')
    owner = make_user()
    path = f'{owner.id}/doc-1_similarity.pdf'
    make_document(id='doc-1', user_id=owner.id, status='pending', similarity_report_path=path)
    reports = supabase.storage.from_('reports').files
    reports[path] = b'ORIGINAL'

    response = client.post(
        '/api/documents/doc-1/status',
        headers=staff.headers,
        content_type='multipart/form-data',
        data={'status': 'completed', 'similarity_report': (io.BytesIO(b'REJECTED'), 'sim.pdf')},
    )
    assert response.status_code == 400
    assert reports == {path: b'ORIGINAL'}
    assert supabase.get('documents', 'doc-1')['status'] == 'pending'


def test_clearing_a_report_removes_the_file_after_the_update(client, make_user, make_document, supabase):
    admin = make_user(role='admin')
    document = make_document(status='in_progress', similarity_report_path='o/d_similarity.pdf',
                             similarity_percentage=12)
    reports = supabase.storage.from_('reports').files
    reports['o/d_similarity.pdf'] = b'SIM'

    response = client.post(f"/api/documents/{document['id']}/status", headers=admin.headers,
                           json={'status': 'in_progress', 'clear_similarity_report': 'true'})
    assert response.status_code == 200
    stored = supabase.get('documents', document['id'])
    assert stored['similarity_report_path'] is None
    assert stored['similarity_percentage'] is None
    assert reports == {}


def test_unknown_scan_type_is_a_bad_request(client, make_user, supabase):
    customer = make_user(credits=1)
    response = client.post(
        '/api/documents',
        headers=customer.headers,
        content_type='multipart/form-data',
        data={'scan_type': 'deep', 'file': (io.BytesIO(b'%PDF'), 'essay.pdf')},
    )
    assert response.status_code == 400
    assert supabase.rows('documents') == []


def test_invalid_percentage_is_rejected(client, make_user, make_document):
    admin = make_user(role='admin')
    document = make_document()
    response = client.post(f"/api/documents/{document['id']}/status", headers=admin.headers,
                           json={'status': 'pending', 'similarity_percentage': 140})
    assert response.status_code == 400


def test_customers_cannot_change_status(client, make_user, make_document):
    customer = make_user()
    document = make_document(user_id=customer.id)
    response = client.post(f"/api/documents/{document['id']}/status", headers=customer.headers,
                           json={'status': 'completed'})
    assert response.status_code == 403


def test_claim_conflict_over_http(client, make_user, make_document):
    first = make_user(role='staff')
    second = make_user(role='staff')
    document = make_document()
    assert client.post(f"/api/documents/{document['id']}/claim", headers=first.headers).status_code == 200
    assert client.post(f"/api/documents/{document['id']}/claim", headers=second.headers).status_code == 409


def test_admin_delete_with_refund(client, make_user, make_document, supabase):
    owner = make_user(credits=0)
    admin = make_user(role='admin')
    document = make_document(user_id=owner.id)
    response = client.delete(f"/api/documents/{document['id']}", headers=admin.headers,
                             json={'refund': True, 'reason': 'cancelled'})
    assert response.get_json()['refunded'] is True
    assert supabase.get('profiles', owner.id)['credit_balance'] == 1


def test_admin_sets_credit_balance(client, make_user, supabase):
    customer = make_user(credits=5)
    admin = make_user(role='admin')
    response = client.post(f'/api/admin/credits/{customer.id}', headers=admin.headers, json={'balance': 8})
    assert response.status_code == 200
    assert supabase.get('profiles', customer.id)['credit_balance'] == 8
    bad = client.post(f'/api/admin/credits/{customer.id}', headers=admin.headers, json={'balance': -2})
    assert bad.status_code == 402


def test_auto_release_requires_maintenance_key(client, make_document, supabase):
    old = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
    document = make_document(status='in_progress', assigned_staff_id='staff-1', assigned_at=old)

    assert client.post('/api/maintenance/auto-release').status_code == 401
    response = client.post('/api/maintenance/auto-release', headers={'X-Maintenance-Key': 'maintenance-key'})

    assert response.get_json()['released'] == [document['id']]
    assert supabase.get('documents', document['id'])['status'] == 'pending'


def test_expire_credits_requires_maintenance_key(client, make_user, supabase):
    user = make_user(credits=6)
    expired = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    supabase.add('credit_validity', user_id=user.id, credits_amount=4, remaining_credits=4,
                 expires_at=expired, credit_type='full', expired=False)

    assert client.post('/api/maintenance/expire-credits').status_code == 401
    response = client.post('/api/maintenance/expire-credits', headers={'X-Maintenance-Key': 'maintenance-key'})

    assert response.status_code == 200
    assert response.get_json()['processed'] == 1
    assert supabase.get('profiles', user.id)['credit_balance'] == 2
    [notification] = supabase.rows('user_notifications')
    assert notification['title'] == 'Credits Expired'


def test_empty_secrets_are_reported_at_startup(app, monkeypatch, caplog):
    import api
    import config

    assert api.check_config() == []
    monkeypatch.setitem(config.UNSUBSCRIBE_CONFIG, 'secret', '')
    with caplog.at_level('WARNING', logger='api'):
        assert api.check_config() == ['UNSUBSCRIBE_SECRET']
    assert 'UNSUBSCRIBE_SECRET' in caplog.text
