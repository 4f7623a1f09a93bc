"""
Tests for the Flask API.

Exercises the routes with the Flask test client over an in-memory ledger,
including the mapping of errors to status codes.
"""

import io
from datetime import date

from factura_reconciliation.api import create_app
from factura_reconciliation.ledger import InMemoryLedger
from factura_reconciliation.models import ExpectedStatus, NewExpectedInvoice

CUIT = '20102000537'


class TestReconciliationAPI:
    """Test cases for the HTTP routes."""

    def setup_method(self):
        """Setup test environment."""
        self.ledger = InMemoryLedger()
        self.app = create_app(self.ledger)
        self.app.config['TESTING'] = True
        self.client = self.app.test_client()
        self.expected = self.ledger.add_expected(NewExpectedInvoice(
            cuit=CUIT, invoice_type='A', point_of_sale=2056, invoice_number=99152,
            issue_date=date(2024, 3, 1),
        ))

    def _register_file(self, name='factura.pdf'):
        response = self.client.post('/api/files', json={'original_filename': name})
        assert response.status_code == 201
        return response.get_json()['file']['id']

    def test_health(self):
        """Test the health endpoint."""
        response = self.client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['ledger']['backend'] == 'memory'

    def test_candidates(self):
        """Test candidate search through query parameters."""
        response = self.client.get('/api/expected-invoices/candidates'
                                   '?invoice_type=A&point_of_sale=2056&invoice_number=99157')

        assert response.status_code == 200
        candidates = response.get_json()['candidates']
        assert candidates[0]['expected_invoice_id'] == self.expected.id
        assert candidates[0]['match_score'] == 83

    def test_candidates_bad_parameter(self):
        """Test that malformed numbers are a client error."""
        response = self.client.get('/api/expected-invoices/candidates?point_of_sale=abc')

        assert response.status_code == 400
        assert response.get_json()['type'] == 'ValidationError'

    def test_exact_match(self):
        """Test exact lookup with and without a hit."""
        key = {'cuit': '20-10200053-7', 'invoice_type': 'A', 'point_of_sale': 2056, 'invoice_number': 99152}

        hit = self.client.post('/api/expected-invoices/exact-match', json=key)
        miss = self.client.post('/api/expected-invoices/exact-match', json={**key, 'invoice_number': 1})

        assert hit.get_json()['expected_invoice']['id'] == self.expected.id
        assert miss.get_json()['expected_invoice'] is None

    def test_commit_match_and_conflict(self):
        """Test a manual commit, then a second commit of the same row."""
        file_id = self._register_file()

        created = self.client.post(f'/api/expected-invoices/{self.expected.id}/match',
                                   json={'file_id': file_id, 'match_score': 83})
        assert created.status_code == 201
        assert created.get_json()['invoice']['full_number'] == 'A-02056-00099152'

        other_id = self._register_file('copia.pdf')
        conflict = self.client.post(f'/api/expected-invoices/{self.expected.id}/match',
                                    json={'file_id': other_id})
        assert conflict.status_code == 409
        assert conflict.get_json()['type'] == 'ConflictError'

    def test_commit_match_not_found(self):
        """Test committing an unknown expected invoice."""
        file_id = self._register_file()

        response = self.client.post('/api/expected-invoices/999/match', json={'file_id': file_id})

        assert response.status_code == 404

    def test_commit_match_requires_file(self):
        """Test that file_id is required."""
        response = self.client.post(f'/api/expected-invoices/{self.expected.id}/match', json={})

        assert response.status_code == 400

    def test_commit_match_score_range(self):
        """Test that the recorded score must be within 0-100."""
        file_id = self._register_file()

        response = self.client.post(f'/api/expected-invoices/{self.expected.id}/match',
                                    json={'file_id': file_id, 'match_score': 130})

        assert response.status_code == 400

    def test_set_status_and_counts(self):
        """Test a manual status change and the status breakdown."""
        response = self.client.patch(f'/api/expected-invoices/{self.expected.id}/status',
                                     json={'status': 'ignored', 'notes': 'duplicado'})
        assert response.status_code == 200
        assert response.get_json()['expected_invoice']['status'] == 'ignored'

        counts = self.client.get('/api/expected-invoices/status-counts').get_json()
        assert counts['ignored'] == 1
        assert counts['pending'] == 0

    def test_set_invalid_status(self):
        """Test unknown and reserved statuses."""
        unknown = self.client.patch(f'/api/expected-invoices/{self.expected.id}/status',
                                    json={'status': 'archived'})
        reserved = self.client.patch(f'/api/expected-invoices/{self.expected.id}/status',
                                     json={'status': 'matched'})

        assert unknown.status_code == 400
        assert reserved.status_code == 400

    def test_import_upload(self):
        """Test uploading an export."""
        content = ("CUIT;Fecha;Tipo;Punto de Venta;Número\n"
                   "27123456780;01/02/2024;C;1;5\n").encode('utf-8')

        response = self.client.post('/api/expected-invoices/import',
                                    data={'file': (io.BytesIO(content), 'comprobantes.csv')},
                                    content_type='multipart/form-data')

        assert response.status_code == 201
        assert response.get_json()['imported'] == 1

    def test_import_without_file(self):
        """Test an upload request with no file."""
        response = self.client.post('/api/expected-invoices/import', data={},
                                    content_type='multipart/form-data')

        assert response.status_code == 400

    def test_process_document(self):
        """Test running one extraction through the gate."""
        file_id = self._register_file()

        response = self.client.post(f'/api/files/{file_id}/process', json={
            'cuit': CUIT, 'invoice_type': 'A', 'point_of_sale': 2056,
            'invoice_number': 99152, 'confidence': 40,
        })

        assert response.status_code == 200
        body = response.get_json()
        assert body['decision'] == 'auto_linked'
        assert body['matched_expected_invoice_id'] == self.expected.id

        linked = self.client.get(f'/api/files/{file_id}').get_json()['file']
        assert linked['invoice_id'] == body['invoice']['id']
        assert self.ledger.get_expected(self.expected.id).status == ExpectedStatus.MATCHED

    def test_process_unknown_file(self):
        """Test processing a file that was never registered."""
        response = self.client.post('/api/files/999/process', json={'invoice_type': 'A'})

        assert response.status_code == 404

    def test_process_batch(self):
        """Test batch processing with one failing document."""
        good = self._register_file('a.pdf')
        bad = self._register_file('b.pdf')

        response = self.client.post('/api/files/process-batch', json={'documents': [
            {'file_id': good, 'extraction': {'invoice_type': 'A', 'invoice_number': 99150,
                                             'confidence': 30}},
            {'file_id': bad, 'extraction': {}},
        ]})

        outcomes = response.get_json()['outcomes']
        assert [o['decision'] for o in outcomes] == ['pending_review', 'failed']

        candidates = self.client.get(f'/api/files/{good}/candidates').get_json()['candidates']
        assert candidates[0]['expected_invoice_id'] == self.expected.id

    def test_invoice_maintenance(self):
        """Test recategorizing and reassigning a finalized invoice."""
        file_id = self._register_file()
        created = self.client.post(f'/api/expected-invoices/{self.expected.id}/match',
                                   json={'file_id': file_id}).get_json()['invoice']

        category = self.client.patch(f"/api/invoices/{created['id']}/category", json={'category': 'Insumos'})
        assert category.get_json()['invoice']['category'] == 'Insumos'

        emitter = self.client.patch(f"/api/invoices/{created['id']}/emitter", json={'cuit': '30712345671'})
        assert emitter.status_code == 200
        assert emitter.get_json()['invoice']['emitter_cuit'] == '30712345671'

    def test_delete_referenced_emitter(self):
        """Test that the conflict body carries the reference breakdown."""
        file_id = self._register_file()
        self.client.post(f'/api/expected-invoices/{self.expected.id}/match', json={'file_id': file_id})

        response = self.client.delete(f'/api/emitters/{CUIT}')

        assert response.status_code == 409
        assert response.get_json()['details']['invoices'] == 1

    def test_delete_unknown_emitter(self):
        """Test deleting an emitter that does not exist."""
        response = self.client.delete('/api/emitters/30712345671')

        assert response.status_code == 404

    def test_missing_body(self):
        """Test a JSON route called without a body."""
        response = self.client.post('/api/files')

        assert response.status_code == 400
        assert response.get_json()['error'] == 'No data provided'

    def test_process_batch_with_non_object_extraction(self):
        """Test that a malformed entry fails alone and the batch still succeeds."""
        bad = self._register_file('a.pdf')
        good = self._register_file('b.pdf')

        response = self.client.post('/api/files/process-batch', json={'documents': [
            {'file_id': bad, 'extraction': ['bad']},
            {'file_id': good, 'extraction': {'cuit': CUIT, 'invoice_type': 'A', 'point_of_sale': 2056,
                                             'invoice_number': 99152, 'confidence': 50}},
        ]})

        assert response.status_code == 200
        outcomes = response.get_json()['outcomes']
        assert [o['decision'] for o in outcomes] == ['failed', 'auto_linked']
