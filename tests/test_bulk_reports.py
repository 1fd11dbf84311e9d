import io

import pytest

from db.bulk_report_operations import BulkReportOperations
from db.document_operations import DocumentOperations


@pytest.fixture
def bulk(supabase, notifier):
    return BulkReportOperations(supabase, DocumentOperations(supabase, notifier))


@pytest.fixture
def similarity_pdf(pdf):
    return pdf('Submission cover page', 'Integrity Overview 15% Overall Similarity')


@pytest.fixture
def ai_pdf(pdf):
    return pdf('Submission cover page', 'AI Writing Overview 42% detected as AI')


def test_single_candidate_gets_report(supabase, bulk, make_document, similarity_pdf):
    document = make_document(normalized_filename='essay', status='in_progress')

    result = bulk.match_reports([{'file_name': 'Essay (1).pdf', 'content': similarity_pdf}], 'staff-1')

    assert result['stats'] == {'total': 1, 'mapped': 1, 'unmatched': 0, 'completed': 0}
    stored = supabase.get('documents', document['id'])
    assert stored['similarity_report_path']
    assert stored['similarity_percentage'] == 15
    assert stored['status'] == 'in_progress'


def test_both_reports_complete_full_scan(supabase, bulk, make_document, similarity_pdf, ai_pdf, notifier):
    document = make_document(normalized_filename='essay', user_id='owner-1')

    result = bulk.match_reports([
        {'file_name': 'essay.pdf', 'content': similarity_pdf},
        {'file_name': '[essay].pdf', 'content': ai_pdf},
    ], 'staff-1')

    assert result['completed'] == [document['id']]
    stored = supabase.get('documents', document['id'])
    assert stored['status'] == 'completed'
    assert stored['ai_percentage'] == 42
    assert notifier.names() == ['document_completed']


def test_similarity_report_completes_similarity_only_scan(supabase, bulk, make_document, similarity_pdf):
    document = make_document(normalized_filename='essay', scan_type='similarity_only')
    result = bulk.match_reports([{'file_name': 'essay.pdf', 'content': similarity_pdf}], 'staff-1')
    assert result['completed'] == [document['id']]


def test_ambiguous_names_are_not_guessed(supabase, bulk, make_document, similarity_pdf):
    first = make_document(normalized_filename='essay')
    second = make_document(normalized_filename='essay')

    result = bulk.match_reports([{'file_name': 'essay.pdf', 'content': similarity_pdf}], 'staff-1')

    [unmatched] = result['unmatched']
    assert unmatched['reason'] == 'ambiguous'
    for document in (first, second):
        stored = supabase.get('documents', document['id'])
        assert stored['needs_review'] is True
        assert stored['similarity_report_path'] is None
    assert len(supabase.rows('unmatched_reports')) == 1


def test_one_open_candidate_among_many(supabase, bulk, make_document, similarity_pdf):
    make_document(normalized_filename='essay', similarity_report_path='done.pdf')
    open_document = make_document(normalized_filename='essay')

    result = bulk.match_reports([{'file_name': 'essay.pdf', 'content': similarity_pdf}], 'staff-1')

    assert result['mapped'][0]['document_id'] == open_document['id']


def test_report_for_finished_slot_is_held(bulk, make_document, similarity_pdf):
    make_document(normalized_filename='essay', similarity_report_path='done.pdf')
    result = bulk.match_reports([{'file_name': 'essay.pdf', 'content': similarity_pdf}], 'staff-1')
    assert result['unmatched'][0]['reason'] == 'already_has_report'


def test_completed_documents_are_not_candidates(bulk, make_document, similarity_pdf):
    make_document(normalized_filename='essay', status='completed')
    result = bulk.match_reports([{'file_name': 'essay.pdf', 'content': similarity_pdf}], 'staff-1')
    assert result['unmatched'][0]['reason'] == 'no_matching_document'


def test_unreadable_report_is_unclassified(supabase, bulk, make_document, pdf):
    make_document(normalized_filename='essay')
    result = bulk.match_reports([
        {'file_name': 'essay.pdf', 'content': pdf('nothing useful', 'still nothing')},
        {'file_name': 'broken.pdf', 'content': b'not a pdf'},
    ], 'staff-1')
    assert [u['reason'] for u in result['unmatched']] == ['unclassified', 'unclassified']
    assert all(path.startswith('unmatched/') for path in supabase.storage.files['reports'])


def test_unmatched_report_can_be_assigned(supabase, bulk, make_document, similarity_pdf):
    bulk.match_reports([{'file_name': 'typo-name.pdf', 'content': similarity_pdf}], 'staff-1')
    [held] = bulk.list_unmatched()
    document = make_document(normalized_filename='essay', scan_type='similarity_only')

    updated = bulk.assign_unmatched(held['id'], document['id'], 'staff-1')

    assert updated['status'] == 'completed'
    assert updated['similarity_report_path'] == held['file_path']
    assert bulk.list_unmatched() == []


def test_bulk_endpoint_requires_staff(client, make_user, make_document, similarity_pdf, supabase):
    customer = make_user()
    staff = make_user(role='staff')
    make_document(normalized_filename='essay')

    def upload(headers):
        return client.post('/api/bulk-reports', headers=headers, content_type='multipart/form-data',
                           data={'files': [(io.BytesIO(similarity_pdf), 'essay.pdf')]})

    assert upload(customer.headers).status_code == 403
    response = upload(staff.headers)
    assert response.status_code == 200
    assert response.get_json()['stats']['mapped'] == 1
