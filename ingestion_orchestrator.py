"""
Clinic Ingestion Service — Ingestion Orchestrator
ingestion_orchestrator.py

Bridges uploaded files → ingesters → upload records.
Responsibilities:
  1. Upload lifecycle (queued → processing → success/failed)
  2. Parsing and schema classification
  3. Dispatch to the clinical or lead ingester for the detected type
  4. Sum-invariant check and status persistence

The upload record is created before parsing so that even a file that
cannot be read leaves a trace. Failures are recorded, never retried.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from config import Settings, get_settings
from entity_resolver import EntityResolver
from exceptions import ClassificationError, IngestionError, OrchestrationFailure
from file_detector import (
    RECORD_TYPE_CATALOGUE, classify, detected, extract_representative_date,
    is_positional_export,
)
from lead_ingesters import LEAD_INGESTERS
from models import (
    Confidence, DetectedFile, IngestionContext, IngestionReportEntry,
    IngestionResult, RecordType, UploadOutcome, UploadStatus,
)
from record_ingesters import CLINICAL_INGESTERS
from repository import IngestionRepository
from tabular_parser import parse_positional, parse_table

logger = logging.getLogger(__name__)

REPORT_FILTERS = ('all', 'clinical', 'leads')


def _now() -> datetime:
    return datetime.now(timezone.utc)


class IngestionOrchestrator:
    """
    Main orchestrator that drives one upload through the pipeline:
      file bytes → rows → classification → ingester → upload record
    """

    def __init__(self, repo: IngestionRepository, settings: Optional[Settings] = None):
        self.repo = repo
        self.settings = settings or get_settings()

    # ----------------------------------------------------------
    # Public API
    # ----------------------------------------------------------

    async def ingest(
        self,
        record_type: RecordType,
        rows: Sequence[Any],
        context: Optional[IngestionContext] = None,
    ) -> IngestionResult:
        """Run the ingester for record_type over already-parsed rows."""
        context = context or IngestionContext()
        if record_type in CLINICAL_INGESTERS:
            # Fresh resolver per run; its cache must not leak across uploads
            ingester = CLINICAL_INGESTERS[record_type](self.repo, EntityResolver(self.repo))
            return await ingester.ingest(rows, context)
        if record_type in LEAD_INGESTERS:
            ingester = LEAD_INGESTERS[record_type](self.repo, self.settings)
            return await ingester.ingest(rows, context)
        raise IngestionError(f"No ingester for record type {record_type.value!r}")

    async def open_upload(
        self,
        file_name: str,
        tag_ids: Iterable[int] = (),
        source_ids: Iterable[int] = (),
        table_hint: Optional[str] = None,
    ) -> int:
        """Create the queued upload record; returns its id."""
        upload_id = await self.repo.create_upload(
            file_name,
            table_name=table_hint or 'unknown',
            metadata={'tag_ids': list(tag_ids), 'source_ids': list(source_ids)},
        )
        logger.info("Upload %d queued: %s", upload_id, file_name)
        return upload_id

    async def process_upload(
        self,
        file_name: str,
        content: bytes,
        tag_ids: Iterable[int] = (),
        source_ids: Iterable[int] = (),
        table_hint: Optional[str] = None,
        upload_id: Optional[int] = None,
        category: Optional[str] = None,
    ) -> UploadOutcome:
        """
        Parse, classify and ingest one uploaded file.

        upload_id: a record already made by open_upload; one is created
            otherwise.
        category: 'clinical' or 'leads' to refuse files of the other kind.
        """
        context = IngestionContext(tag_ids=list(tag_ids), source_ids=list(source_ids))
        if upload_id is None:
            upload_id = await self.open_upload(
                file_name, context.tag_ids, context.source_ids, table_hint)
        context.upload_id = upload_id

        detected_file: Optional[DetectedFile] = None
        try:
            detected_file, rows = self._parse_and_classify(file_name, content)
            self._check_category(detected_file, category)
            return await self._run(upload_id, detected_file, rows, context)
        except Exception as e:
            return await self._fail(upload_id, file_name, e, detected_file)

    async def process_rows(
        self,
        upload_id: int,
        record_type: RecordType,
        rows: Sequence[Any],
        context: Optional[IngestionContext] = None,
    ) -> UploadOutcome:
        """Same lifecycle for rows that were parsed elsewhere."""
        upload = await self.repo.get_upload(upload_id)
        if upload is None:
            raise IngestionError(f"Upload {upload_id} not found")
        if upload.upload_status.is_terminal:
            raise IngestionError(f"Upload {upload_id} already {upload.upload_status.value}")

        context = context or IngestionContext(
            tag_ids=upload.metadata.get('tag_ids', []),
            source_ids=upload.metadata.get('source_ids', []),
        )
        context.upload_id = upload_id
        detected_file = detected(record_type, upload.file_name)
        try:
            if record_type is RecordType.UNKNOWN:
                raise ClassificationError(upload.file_name)
            return await self._run(upload_id, detected_file, rows, context)
        except Exception as e:
            return await self._fail(upload_id, upload.file_name, e, detected_file)

    async def latest_uploads(self, filter: str = 'all') -> list[IngestionReportEntry]:
        """Latest upload per record type for the ingestion report."""
        if filter == 'remedi':
            filter = 'clinical'
        if filter not in REPORT_FILTERS:
            raise ValueError(f"filter must be one of {REPORT_FILTERS}")

        entries = []
        for record_type, (table_name, display_name) in RECORD_TYPE_CATALOGUE.items():
            if filter == 'clinical' and not record_type.is_clinical:
                continue
            if filter == 'leads' and not record_type.is_lead:
                continue
            upload = await self.repo.latest_upload_for_table(table_name)
            entries.append(IngestionReportEntry(
                record_type=record_type,
                display_name=display_name,
                table_name=table_name,
                has_data=upload is not None,
                in_progress=upload is not None and not upload.upload_status.is_terminal,
                upload=upload,
            ))
        return entries

    # ----------------------------------------------------------
    # Internal Pipeline
    # ----------------------------------------------------------

    def _parse_and_classify(self, file_name: str, content: bytes) -> tuple[DetectedFile, list]:
        if is_positional_export(file_name):
            rows: list = parse_positional(file_name, content)
            return detected(RecordType.LEADS_POSITIONAL, file_name, Confidence.MEDIUM), rows

        table = parse_table(file_name, content)
        detected_file = classify(file_name, table.headers)
        if detected_file.type is RecordType.UNKNOWN:
            raise ClassificationError(file_name)
        return detected_file, table.rows

    @staticmethod
    def _check_category(detected_file: DetectedFile, category: Optional[str]) -> None:
        if category is None:
            return
        record_type = detected_file.type
        if category == 'clinical' and not record_type.is_clinical:
            raise ClassificationError(
                detected_file.file_name,
                f"{detected_file.file_name!r} is a {detected_file.display_name} file, "
                "not a clinic export",
            )
        if category == 'leads' and not record_type.is_lead:
            raise ClassificationError(
                detected_file.file_name,
                f"{detected_file.file_name!r} is a {detected_file.display_name} file, "
                "not a leads export",
            )

    async def _run(
        self,
        upload_id: int,
        detected_file: DetectedFile,
        rows: Sequence[Any],
        context: IngestionContext,
    ) -> UploadOutcome:
        record_type = detected_file.type
        csv_date = extract_representative_date(record_type, rows)

        await self.repo.update_upload(upload_id, {
            'table_name': detected_file.table_name,
            'record_type': record_type,
            'csv_date': csv_date,
            'upload_status': UploadStatus.PROCESSING,
        })
        logger.info(
            "Upload %d processing: %s as %s (%s confidence, %d rows)",
            upload_id, detected_file.file_name, record_type.value,
            detected_file.confidence.value, len(rows),
        )

        result = await self.ingest(record_type, rows, context)
        if result.processed != len(rows):
            raise OrchestrationFailure(
                f"Row accounting mismatch: {result.processed} outcomes for {len(rows)} rows"
            )

        await self.repo.update_upload(upload_id, {
            'upload_status': UploadStatus.SUCCESS,
            'rows_processed': result.processed,
            'rows_inserted': result.inserted,
            'rows_updated': result.updated,
            'rows_failed': result.failed,
            'rows_skipped': result.skipped,
            'error_message': None,
            'completed_at': _now(),
        })
        logger.info(
            "Upload %d success: %d inserted, %d updated, %d failed, %d skipped",
            upload_id, result.inserted, result.updated, result.failed, result.skipped,
        )
        return UploadOutcome(
            file_name=detected_file.file_name,
            success=True,
            upload_id=upload_id,
            record_type=record_type,
            display_name=detected_file.display_name,
            table_name=detected_file.table_name,
            status=UploadStatus.SUCCESS,
            result=result,
            csv_date=csv_date,
        )

    async def _fail(
        self,
        upload_id: int,
        file_name: str,
        error: Exception,
        detected_file: Optional[DetectedFile],
    ) -> UploadOutcome:
        message = str(error) or error.__class__.__name__
        if isinstance(error, IngestionError):
            logger.warning("Upload %d failed: %s", upload_id, message)
        else:
            logger.exception("Upload %d failed unexpectedly", upload_id)

        await self.repo.update_upload(upload_id, {
            'upload_status': UploadStatus.FAILED,
            'error_message': message,
            'completed_at': _now(),
        })
        known = detected_file is not None and detected_file.type is not RecordType.UNKNOWN
        return UploadOutcome(
            file_name=file_name,
            success=False,
            upload_id=upload_id,
            record_type=detected_file.type if known else None,
            display_name=detected_file.display_name if known else None,
            table_name=detected_file.table_name if known else None,
            status=UploadStatus.FAILED,
            error=message,
        )
