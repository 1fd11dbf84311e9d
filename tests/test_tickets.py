import pytest

from db.errors import TicketNotFoundError, WorkflowError
from db.ticket_operations import TicketOperations


@pytest.fixture
def tickets(supabase, notifier):
    return TicketOperations(supabase, notifier)


def test_admin_reply_moves_open_ticket_in_progress(tickets, make_user, notifier):
    customer = make_user()
    ticket = tickets.create_ticket(customer.id, 'Upload stuck', 'My essay has been pending for hours')

    result = tickets.reply(ticket['id'], 'admin-1', 'Looking into it', is_admin=True)

    assert result['ticket']['status'] == 'in_progress'
    assert result['message']['is_admin'] is True
    assert notifier.names() == ['notify_user']


def test_customer_reply_reopens_resolved_ticket(tickets, make_user):
    customer = make_user()
    ticket = tickets.create_ticket(customer.id, 'Question', 'Hello')
    tickets.update_status(ticket['id'], 'resolved')

    result = tickets.reply(ticket['id'], customer.id, 'Still broken', is_admin=False)

    assert result['ticket']['status'] == 'open'
    assert [m['message'] for m in tickets.list_messages(ticket['id'])] == ['Still broken']


def test_customer_cannot_reply_to_someone_elses_ticket(tickets, make_user):
    owner = make_user()
    stranger = make_user()
    ticket = tickets.create_ticket(owner.id, 'Question', 'Hello')
    with pytest.raises(TicketNotFoundError):
        tickets.reply(ticket['id'], stranger.id, 'hi', is_admin=False)


def test_refund_requests_are_tickets_mentioning_refund(tickets, make_user):
    customer = make_user()
    refund = tickets.create_ticket(customer.id, 'Refund request for order 42', 'Charged twice')
    tickets.create_ticket(customer.id, 'Login issue', 'Cannot log in')
    assert [t['id'] for t in tickets.list_refund_requests()] == [refund['id']]


def test_refund_approve_and_decline(tickets, make_user, notifier):
    customer = make_user()
    approved = tickets.create_ticket(customer.id, 'REFUND please', 'x')
    declined = tickets.create_ticket(customer.id, 'Refund', 'y')

    assert tickets.respond_to_refund(approved['id'], True, 'Refunded')['status'] == 'resolved'
    result = tickets.respond_to_refund(declined['id'], False, 'Outside window')
    assert result['status'] == 'closed'
    assert result['admin_response'] == 'Outside window'
    assert result['responded_at']
    assert len(notifier.calls) == 2


def test_non_refund_ticket_cannot_be_refunded(tickets, make_user):
    ticket = tickets.create_ticket(make_user().id, 'Login issue', 'x')
    with pytest.raises(WorkflowError):
        tickets.respond_to_refund(ticket['id'], True, 'ok')


def test_ticket_endpoints(client, make_user):
    customer = make_user()
    other = make_user()
    admin = make_user(role='admin')

    created = client.post('/api/tickets', headers=customer.headers,
                          json={'subject': 'Refund needed', 'message': 'Wrong upload'})
    assert created.status_code == 201
    ticket_id = created.get_json()['ticket']['id']

    assert client.get(f'/api/tickets/{ticket_id}/messages', headers=other.headers).status_code == 404
    assert client.get('/api/tickets', headers=other.headers).get_json()['tickets'] == []
    assert len(client.get('/api/tickets', headers=admin.headers).get_json()['tickets']) == 1

    assert client.post(f'/api/admin/refunds/{ticket_id}/respond', headers=customer.headers,
                       json={'action': 'approve'}).status_code == 403
    response = client.post(f'/api/admin/refunds/{ticket_id}/respond', headers=admin.headers,
                           json={'action': 'approve', 'response': 'Done'})
    assert response.get_json()['ticket']['status'] == 'resolved'
