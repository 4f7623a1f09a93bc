"""
HTTP surface for the reconciliation core.

A thin Flask layer: request parsing, delegation to the resolver, gate, linker
and importer, and translation of the error taxonomy to status codes.
"""

import os
import sys
import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from factura_reconciliation.config import ConfigManager
from factura_reconciliation.gate import ConfidenceGate
from factura_reconciliation.importers import ExpectedInvoiceImporter
from factura_reconciliation.ledger import BaseLedger, SQLLedger
from factura_reconciliation.linking import EmitterGuard, InvoiceLinker
from factura_reconciliation.matching import MatchResolver
from factura_reconciliation.models import (
    ConfigurationError, ConflictError, ExpectedStatus, ExtractedRecord,
    InvoiceReconciliationError, NotFoundError, ReconciliationSettings,
    StorageError, ValidationError
)

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StorageError, 500),
    (ConfigurationError, 500),
)

_logging_configured = False


def configure_logging(level: int = logging.INFO):
    """Send log records to stdout; only the first call installs the handler."""
    global _logging_configured
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if _logging_configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)
    _logging_configured = True


def _status_for(error: InvoiceReconciliationError) -> int:
    for error_type, status in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status
    return 500


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("No data provided")
    return data


def _int_arg(name: str, value: Any = None, required: bool = False) -> Optional[int]:
    if value is None:
        value = request.args.get(name)
    if value is None or value == '':
        if required:
            raise ValidationError(f"Missing required field: {name}")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"'{name}' must be an integer")
    try:
        return int(value)
    except (ValueError, TypeError):
        raise ValidationError(f"'{name}' must be an integer")


def create_app(ledger: BaseLedger, settings: Optional[ReconciliationSettings] = None) -> Flask:
    """
    Build the Flask application around a ledger.

    Args:
        ledger: Storage back-end shared by every request
        settings: Reconciliation settings (defaults when omitted)
    """
    settings = settings or ReconciliationSettings()
    resolver = MatchResolver(ledger, settings)
    linker = InvoiceLinker(ledger, settings)
    gate = ConfidenceGate(ledger, settings, resolver=resolver, linker=linker)
    guard = EmitterGuard(ledger)
    importer = ExpectedInvoiceImporter(ledger, default_currency=settings.default_currency)

    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = 50 * 1024 * 1024  # 50 MB limit

    @app.errorhandler(InvoiceReconciliationError)
    def handle_reconciliation_error(error: InvoiceReconciliationError):
        status = _status_for(error)
        body = {'error': str(error), 'type': type(error).__name__}
        if isinstance(error, ConflictError) and error.details:
            body['details'] = error.details

        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {error}")
        else:
            logger.info(f"{request.method} {request.path} rejected ({status}): {error}")
        return jsonify(body), status

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok', 'ledger': ledger.get_ledger_info()})

    # --- Expected invoices ---

    @app.route('/api/expected-invoices/candidates')
    def find_candidates():
        candidates = resolver.find_candidates(
            cuit=request.args.get('cuit') or None,
            invoice_type=request.args.get('invoice_type') or None,
            point_of_sale=_int_arg('point_of_sale'),
            invoice_number=_int_arg('invoice_number'),
            limit=_int_arg('limit'),
        )
        return jsonify({'candidates': [c.to_dict() for c in candidates]})

    @app.route('/api/expected-invoices/exact-match', methods=['POST'])
    def find_exact_match():
        expected = resolver.find_exact_match(_json_body())
        return jsonify({'expected_invoice': expected.to_dict() if expected else None})

    @app.route('/api/expected-invoices/<int:expected_id>/match', methods=['POST'])
    def commit_match(expected_id: int):
        data = _json_body()
        file_id = _int_arg('file_id', data.get('file_id'), required=True)
        fields = ExtractedRecord.from_dict(data['fields']) if data.get('fields') else None
        match_score = _int_arg('match_score', data.get('match_score'))
        if match_score is None:
            match_score = 100
        elif match_score < 0 or match_score > 100:
            raise ValidationError("'match_score' must be between 0 and 100")

        invoice = linker.commit_match(expected_id, file_id, fields=fields, match_score=match_score)
        return jsonify({'invoice': invoice.to_dict()}), 201

    @app.route('/api/expected-invoices/<int:expected_id>/status', methods=['PATCH'])
    def set_expected_status(expected_id: int):
        data = _json_body()
        try:
            status = ExpectedStatus(data.get('status'))
        except ValueError:
            raise ValidationError(f"Invalid status: {data.get('status')!r}")

        expected = linker.set_expected_status(expected_id, status, data.get('notes'))
        return jsonify({'expected_invoice': expected.to_dict()})

    @app.route('/api/expected-invoices/status-counts')
    def expected_status_counts():
        counts = ledger.count_expected_by_status()
        return jsonify({status.value: count for status, count in counts.items()})

    @app.route('/api/expected-invoices/import', methods=['POST'])
    def import_expected():
        upload = request.files.get('file')
        if upload is None or not upload.filename:
            raise ValidationError("No file uploaded")

        result = importer.import_file(upload.stream, filename=upload.filename)
        return jsonify(result.to_dict()), 201

    # --- Source files ---

    @app.route('/api/files', methods=['POST'])
    def register_file():
        data = _json_body()
        filename = data.get('original_filename')
        if not filename:
            raise ValidationError("Missing required field: original_filename")
        source = ledger.add_file(filename)
        return jsonify({'file': source.to_dict()}), 201

    @app.route('/api/files/<int:file_id>')
    def get_file(file_id: int):
        source = ledger.get_file(file_id)
        if source is None:
            raise NotFoundError(f"File {file_id} not found")
        return jsonify({'file': source.to_dict()})

    @app.route('/api/files/<int:file_id>/process', methods=['POST'])
    def process_file(file_id: int):
        outcome = gate.process_document(file_id, _json_body())
        return jsonify(outcome.to_dict())

    @app.route('/api/files/process-batch', methods=['POST'])
    def process_batch():
        documents = _json_body().get('documents')
        if not isinstance(documents, list):
            raise ValidationError("'documents' must be a list")

        pairs = []
        for document in documents:
            if not isinstance(document, dict):
                raise ValidationError("Each document must be an object")
            pairs.append((_int_arg('file_id', document.get('file_id'), required=True),
                          document.get('extraction') or {}))

        outcomes = gate.process_batch(pairs)
        return jsonify({'outcomes': [outcome.to_dict() for outcome in outcomes]})

    @app.route('/api/files/<int:file_id>/candidates')
    def file_candidates(file_id: int):
        candidates = gate.review_candidates(file_id, limit=_int_arg('limit'))
        return jsonify({'candidates': [c.to_dict() for c in candidates]})

    # --- Finalized invoices and emitters ---

    @app.route('/api/invoices/<int:invoice_id>/category', methods=['PATCH'])
    def recategorize(invoice_id: int):
        invoice = linker.recategorize(invoice_id, _json_body().get('category'))
        return jsonify({'invoice': invoice.to_dict()})

    @app.route('/api/invoices/<int:invoice_id>/emitter', methods=['PATCH'])
    def reassign_emitter(invoice_id: int):
        cuit = _json_body().get('cuit')
        if not cuit:
            raise ValidationError("Missing required field: cuit")
        invoice = linker.reassign_emitter(invoice_id, cuit)
        return jsonify({'invoice': invoice.to_dict()})

    @app.route('/api/emitters/<cuit>', methods=['DELETE'])
    def delete_emitter(cuit: str):
        guard.delete_emitter(cuit)
        return jsonify({'deleted': cuit})

    return app


def main():
    configure_logging()
    config_manager = ConfigManager()
    settings = config_manager.load_settings()
    ledger = SQLLedger(config_manager.get_database_url())

    app = create_app(ledger, settings)
    port = int(os.environ.get('PORT', 5000))
    logger.info(f"Starting reconciliation API on port {port}")
    app.run(host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
