"""
Confidence gate for processed documents.

Decides, from the extractor's self-reported confidence and the resolver's
outcome, whether a document is linked to its expected invoice, turned into an
invoice from its own fields, queued for manual review, or rejected.
"""

from collections import Counter
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from factura_reconciliation.cuit import is_valid_cuit
from factura_reconciliation.ledger.base_ledger import BaseLedger
from factura_reconciliation.linking import InvoiceLinker
from factura_reconciliation.matching.resolver import MatchResolver
from factura_reconciliation.models import (
    Decision, ExtractedRecord, FileStatus, InvoiceReconciliationError,
    ConflictError, MatchCandidate, NotFoundError, ProcessingOutcome,
    ReconciliationSettings, SourceFile, ValidationError
)

import logging
logger = logging.getLogger(__name__)

EMPTY_EXTRACTION_MESSAGE = "Extraction produced no usable data"

DocumentInput = Union[ExtractedRecord, Mapping[str, Any]]


class ConfidenceGate:
    """
    One-shot decision per document.

    1. Exact key match on an open expected invoice: link it, building the
       invoice from the expected invoice's fields.
    2. Otherwise, confidence at or above the threshold with a complete
       record: create the invoice from the extracted fields.
    3. Otherwise, any partial record: queue for review with the top
       candidates.
    4. Nothing extracted: fail.

    A CUIT that fails its check digit is not trusted: steps 1 and 2 are
    skipped and candidates are searched without it.
    """

    def __init__(self, ledger: BaseLedger, settings: Optional[ReconciliationSettings] = None,
                 resolver: Optional[MatchResolver] = None,
                 linker: Optional[InvoiceLinker] = None):
        self.ledger = ledger
        self.settings = settings or ReconciliationSettings()
        self.resolver = resolver or MatchResolver(ledger, self.settings)
        self.linker = linker or InvoiceLinker(ledger, self.settings)
        self.logger = logging.getLogger(f"{__name__}.ConfidenceGate")

    def process_document(self, file_id: int, extracted: DocumentInput) -> ProcessingOutcome:
        """
        Run one document through the gate.

        The stored extraction of the file is replaced by this one. Invoices
        finalized by earlier attempts are left untouched.

        Args:
            file_id: Source file the extraction belongs to
            extracted: ExtractedRecord or raw extractor output

        Returns:
            ProcessingOutcome describing the decision

        Raises:
            NotFoundError: If the file does not exist
            ConflictError: If the file is already linked to an invoice, or the
                invoice it would create already exists
            ValidationError: If the raw extractor output is malformed
        """
        record = extracted if isinstance(extracted, ExtractedRecord) else ExtractedRecord.from_dict(extracted)
        self._get_unlinked_file(file_id)

        if record.is_empty():
            self.ledger.save_extraction(file_id, record, FileStatus.FAILED, EMPTY_EXTRACTION_MESSAGE)
            self.logger.warning(f"File {file_id}: {EMPTY_EXTRACTION_MESSAGE}")
            return ProcessingOutcome(
                file_id=file_id,
                decision=Decision.FAILED,
                confidence=record.extraction_confidence,
                requires_review=True,
                error_message=EMPTY_EXTRACTION_MESSAGE,
            )

        cuit_trusted = record.cuit is not None and is_valid_cuit(record.cuit)
        if record.cuit is not None and not cuit_trusted:
            self.logger.warning(f"File {file_id}: CUIT {record.cuit} fails its check digit, ignoring it for matching")

        if cuit_trusted and record.has_full_key():
            outcome = self._try_auto_link(file_id, record)
            if outcome is not None:
                return outcome

        if cuit_trusted and self._can_auto_create(record):
            with self.ledger.transaction():
                self.ledger.save_extraction(file_id, record, FileStatus.PROCESSED)
                invoice = self.linker.create_from_extraction(file_id, record)

            self.logger.info(f"File {file_id}: auto-created invoice {invoice.id} "
                             f"(confidence {record.extraction_confidence})")
            return ProcessingOutcome(
                file_id=file_id,
                decision=Decision.AUTO_CREATED,
                confidence=record.extraction_confidence,
                requires_review=False,
                invoice=invoice,
            )

        candidates = self._candidates_for(record, cuit_trusted, self.settings.review_candidate_limit)
        self.ledger.save_extraction(file_id, record, FileStatus.REVIEWING)
        self.logger.info(f"File {file_id}: queued for review with {len(candidates)} candidates "
                         f"(confidence {record.extraction_confidence})")
        return ProcessingOutcome(
            file_id=file_id,
            decision=Decision.PENDING_REVIEW,
            confidence=record.extraction_confidence,
            requires_review=True,
            candidates=candidates,
        )

    def process_batch(self, documents: Iterable[Tuple[int, DocumentInput]]) -> List[ProcessingOutcome]:
        """
        Process documents one after another.

        A failing document is reported as a FAILED outcome and does not
        affect the others.
        """
        outcomes = []
        for file_id, extracted in documents:
            try:
                outcomes.append(self.process_document(file_id, extracted))
            except InvoiceReconciliationError as e:
                self.logger.error(f"File {file_id}: processing failed: {e}")
                if isinstance(e, ValidationError):
                    self._mark_failed(file_id, str(e))
                outcomes.append(ProcessingOutcome(
                    file_id=file_id,
                    decision=Decision.FAILED,
                    confidence=0.0,
                    requires_review=True,
                    error_message=str(e),
                ))

        summary = Counter(outcome.decision.value for outcome in outcomes)
        self.logger.info(f"Batch processed {len(outcomes)} documents: {dict(summary)}")
        return outcomes

    def review_candidates(self, file_id: int, limit: Optional[int] = None) -> List[MatchCandidate]:
        """
        Candidates for the extraction stored on a file.

        Raises:
            NotFoundError: If the file does not exist
        """
        source = self.ledger.get_file(file_id)
        if source is None:
            raise NotFoundError(f"File {file_id} not found")
        if source.extracted is None:
            return []
        record = source.extracted
        cuit_trusted = record.cuit is not None and is_valid_cuit(record.cuit)
        return self._candidates_for(record, cuit_trusted, limit or self.settings.default_candidate_limit)

    def _try_auto_link(self, file_id: int, record: ExtractedRecord) -> Optional[ProcessingOutcome]:
        expected = self.resolver.find_exact_match(record.natural_key())
        if expected is None:
            return None
        if expected.issue_date is None:
            self.logger.warning(f"File {file_id}: expected invoice {expected.id} has no issue date, "
                                f"can not link automatically")
            return None

        with self.ledger.transaction():
            self.ledger.save_extraction(file_id, record, FileStatus.PROCESSED)
            invoice = self.linker.commit_match(
                expected.id, file_id,
                match_score=100,
                extraction_confidence=self.settings.exact_match_confidence,
            )

        self.logger.info(f"File {file_id}: linked to expected invoice {expected.id} as invoice {invoice.id}")
        return ProcessingOutcome(
            file_id=file_id,
            decision=Decision.AUTO_LINKED,
            confidence=self.settings.exact_match_confidence,
            requires_review=False,
            invoice=invoice,
            matched_expected_invoice_id=expected.id,
        )

    def _can_auto_create(self, record: ExtractedRecord) -> bool:
        if record.extraction_confidence < self.settings.auto_create_threshold:
            return False
        if not record.has_full_key() or record.issue_date is None:
            self.logger.debug("Confidence above threshold but record is incomplete, routing to review")
            return False
        return True

    def _candidates_for(self, record: ExtractedRecord, cuit_trusted: bool, limit: int) -> List[MatchCandidate]:
        return self.resolver.find_candidates(
            cuit=record.cuit if cuit_trusted else None,
            invoice_type=record.invoice_type,
            point_of_sale=record.point_of_sale,
            invoice_number=record.invoice_number,
            limit=limit,
        )

    def _get_unlinked_file(self, file_id: int) -> SourceFile:
        source = self.ledger.get_file(file_id)
        if source is None:
            raise NotFoundError(f"File {file_id} not found")
        if source.invoice_id is not None:
            raise ConflictError(f"File {file_id} is already linked to invoice {source.invoice_id}")
        return source

    def _mark_failed(self, file_id: int, message: str):
        source = self.ledger.get_file(file_id)
        if source is not None and source.invoice_id is None:
            self.ledger.save_extraction(file_id, None, FileStatus.FAILED, message)
