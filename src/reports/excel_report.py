"""Excel report generator for reconciliation outcomes."""

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from src.engine.models import (
    CanonicalRecord,
    IngestionJob,
    OutcomeStatus,
    ReconciliationOutcome,
    ReconciliationSummary,
)


class ExcelReportGenerator:
    """Generate Excel reports from the stored outcomes of one ingestion job."""

    # Style constants
    HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
    HEADER_FONT = Font(name="Calibri", size=11, bold=True, color="FFFFFF")
    MATCHED_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
    PARTIAL_FILL = PatternFill(start_color="DDEBF7", end_color="DDEBF7", fill_type="solid")
    UNMATCHED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
    DUPLICATE_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
    TITLE_FONT = Font(name="Calibri", size=16, bold=True, color="1F4E79")
    SUBTITLE_FONT = Font(name="Calibri", size=12, bold=True, color="1F4E79")
    KPI_FONT = Font(name="Calibri", size=14, bold=True)
    THIN_BORDER = Border(
        left=Side(style="thin"),
        right=Side(style="thin"),
        top=Side(style="thin"),
        bottom=Side(style="thin"),
    )

    RECORD_HEADERS = ["Transaction ID", "Reference", "Date", "Amount", "Description"]

    def generate(
        self,
        job: IngestionJob,
        outcomes: List[ReconciliationOutcome],
        records: Dict[int, CanonicalRecord],
        output_path: str | Path,
    ) -> Path:
        """
        Generate Excel report with 5 tabs.

        Args:
            job: The reconciled ingestion job.
            outcomes: All outcomes of the job.
            records: Uploaded and system records referenced by the outcomes, by id.
            output_path: Path for the output Excel file.

        Returns:
            Path to the generated report.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        wb = Workbook()
        summary = ReconciliationSummary.from_outcomes(outcomes)

        # Tab 1: Summary
        self._create_summary_tab(wb, job, summary)

        by_status = {status: [] for status in OutcomeStatus}
        for outcome in outcomes:
            by_status[outcome.status].append(outcome)

        # Tab 2-3: linked to a system record
        self._create_linked_tab(
            wb, "Matched", "00B050", by_status[OutcomeStatus.MATCHED], records, self.MATCHED_FILL
        )
        self._create_linked_tab(
            wb, "Partially Matched", "2F75B5",
            by_status[OutcomeStatus.PARTIALLY_MATCHED], records, self.PARTIAL_FILL,
        )

        # Tab 4-5: uploaded record only
        self._create_unlinked_tab(
            wb, "Not Matched", "FF0000",
            by_status[OutcomeStatus.NOT_MATCHED], records, self.UNMATCHED_FILL,
        )
        self._create_unlinked_tab(
            wb, "Duplicates", "FFC000",
            by_status[OutcomeStatus.DUPLICATE], records, self.DUPLICATE_FILL,
        )

        wb.save(str(output_path))
        return output_path

    def _create_summary_tab(
        self,
        wb: Workbook,
        job: IngestionJob,
        summary: ReconciliationSummary,
    ) -> None:
        """Create the Summary dashboard tab."""
        ws = wb.active
        ws.title = "Summary"
        ws.sheet_properties.tabColor = "1F4E79"

        # Title
        ws.merge_cells("A1:F1")
        ws["A1"] = f"Reconciliation Report: {job.file_name}"
        ws["A1"].font = self.TITLE_FONT
        ws["A1"].alignment = Alignment(horizontal="center")

        ws.merge_cells("A2:F2")
        ws["A2"] = f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        ws["A2"].alignment = Alignment(horizontal="center")

        kpis = [
            ("Accuracy", f"{summary.accuracy:.2f}%"),
            ("Total Records", str(summary.total)),
            ("Matched", str(summary.matched)),
            ("Partially Matched", str(summary.partially_matched)),
            ("Not Matched", str(summary.not_matched)),
            ("Duplicates", str(summary.duplicate)),
        ]

        ws["A4"] = "Key Performance Indicators"
        ws["A4"].font = self.SUBTITLE_FONT

        for i, (label, value) in enumerate(kpis, start=5):
            ws[f"A{i}"] = label
            ws[f"A{i}"].font = Font(bold=True)
            ws[f"B{i}"] = value
            ws[f"B{i}"].font = self.KPI_FONT

            # Color coding
            if label in ("Not Matched", "Duplicates") and int(value) > 0:
                ws[f"B{i}"].fill = self.UNMATCHED_FILL
            elif label == "Accuracy":
                ws[f"B{i}"].fill = (
                    self.MATCHED_FILL if summary.accuracy >= 95 else self.UNMATCHED_FILL
                )

        row = len(kpis) + 7
        ws[f"A{row}"] = "Ingestion"
        ws[f"A{row}"].font = self.SUBTITLE_FONT
        details = [
            ("Job ID", job.id),
            ("Rows in File", job.total_records or 0),
            ("Rows Processed", job.processed_records),
            ("Completed At", job.completed_at or ""),
        ]
        for label, value in details:
            row += 1
            ws[f"A{row}"] = label
            ws[f"A{row}"].font = Font(bold=True)
            ws[f"B{row}"] = value

        ws.column_dimensions["A"].width = 25
        ws.column_dimensions["B"].width = 36

    def _create_linked_tab(
        self,
        wb: Workbook,
        title: str,
        color: str,
        outcomes: List[ReconciliationOutcome],
        records: Dict[int, CanonicalRecord],
        fill: PatternFill,
    ) -> None:
        """Tab listing uploaded records next to the system record they were linked to."""
        ws = wb.create_sheet(title)
        ws.sheet_properties.tabColor = color

        headers = (
            [f"Uploaded {h}" for h in self.RECORD_HEADERS]
            + [f"System {h}" for h in self.RECORD_HEADERS]
            + ["Score", "Mismatched Fields"]
        )
        self._write_headers(ws, headers)

        for i, outcome in enumerate(outcomes, start=2):
            uploaded = records.get(outcome.uploaded_record_id)
            system = records.get(outcome.system_record_id)
            values = (
                self._record_cells(uploaded)
                + self._record_cells(system)
                + [outcome.match_score, self._describe_mismatches(outcome)]
            )
            self._write_row(ws, i, values, fill)

        self._auto_width(ws, headers)

    def _create_unlinked_tab(
        self,
        wb: Workbook,
        title: str,
        color: str,
        outcomes: List[ReconciliationOutcome],
        records: Dict[int, CanonicalRecord],
        fill: PatternFill,
    ) -> None:
        """Tab listing uploaded records that were not linked to a system record."""
        ws = wb.create_sheet(title)
        ws.sheet_properties.tabColor = color

        headers = self.RECORD_HEADERS + ["Manually Resolved"]
        self._write_headers(ws, headers)

        for i, outcome in enumerate(outcomes, start=2):
            uploaded = records.get(outcome.uploaded_record_id)
            values = self._record_cells(uploaded) + ["Yes" if outcome.manually_resolved else ""]
            self._write_row(ws, i, values, fill)

        self._auto_width(ws, headers)

    @staticmethod
    def _record_cells(record: Optional[CanonicalRecord]) -> list:
        if record is None:
            return ["", "", "", None, ""]
        return [
            record.transaction_id,
            record.reference_number,
            record.date.strftime("%Y-%m-%d"),
            float(record.amount),
            record.description[:80],
        ]

    @staticmethod
    def _describe_mismatches(outcome: ReconciliationOutcome) -> str:
        return "; ".join(
            f"{m.field}: {m.uploaded_value} vs {m.system_value}"
            for m in outcome.mismatched_fields
        )

    def _write_row(self, ws, row: int, values: list, fill: PatternFill) -> None:
        for col_idx, value in enumerate(values, start=1):
            cell = ws.cell(row=row, column=col_idx, value=value)
            cell.fill = fill
            if isinstance(value, float):
                cell.number_format = '#,##0.00'

    def _write_headers(self, ws, headers: List[str]) -> None:
        """Write styled header row."""
        for col_idx, header in enumerate(headers, start=1):
            cell = ws.cell(row=1, column=col_idx, value=header)
            cell.font = self.HEADER_FONT
            cell.fill = self.HEADER_FILL
            cell.alignment = Alignment(horizontal="center")
            cell.border = self.THIN_BORDER

        # Freeze top row
        ws.freeze_panes = "A2"

        # Auto-filter
        ws.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"

    def _auto_width(self, ws, headers: List[str]) -> None:
        """Auto-adjust column widths."""
        for col_idx, header in enumerate(headers, start=1):
            col_letter = get_column_letter(col_idx)
            max_len = len(header) + 4
            ws.column_dimensions[col_letter].width = min(max_len, 35)
