"""
Report exports for bulk analysis sessions.

Every generator is a pure function of the session dict (BulkAnalysisSession.to_dict())
and its file-result dicts (BulkFileResult.to_dict()) and returns the document
as bytes or str. Nothing is written to disk.
"""
import io
import json
import zipfile
from datetime import datetime, timezone

import pandas as pd
from fpdf import FPDF
from openpyxl.styles import Font

from callqa.services.bulk_summary import performance_rating

SUMMARY_BANNER = "BPO QUALITY ANALYTICS - BULK ANALYSIS SUMMARY"

TRAINING_CSV_COLUMNS = [
    "file_name",
    "file_size",
    "processing_time",
    "transcription",
    "translation",
    "call_summary",
    "agent_coaching",
    "overall_score",
    "call_opening_score",
    "call_closing_score",
    "speaking_quality_score",
    "customer_sentiment",
    "customer_sentiment_score",
    "customer_sentiment_justification",
    "agent_sentiment",
    "agent_sentiment_score",
    "agent_sentiment_justification",
    "keywords",
    "completed_at",
    "status",
]

EXPORT_FORMATS = ("excel", "pdf")

# (label, lower bound inclusive) from best to worst
SCORE_BANDS = [
    ("Excellent (8-10)", 8.0),
    ("Good (6-7.9)", 6.0),
    ("Fair (4-5.9)", 4.0),
    ("Poor (<4)", float("-inf")),
]


def export_filename(prefix: str, session_id: int, ext: str, now: datetime | None = None) -> str:
    """e.g. bulk_analysis_12_20261019_143000.xlsx"""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{session_id}_{stamp}.{ext}"


def _completed(files: list[dict]) -> list[dict]:
    return [f for f in files if f.get("status") == "completed"]


def _scores(files: list[dict]) -> list[float]:
    return [f["overall_score"] for f in _completed(files) if f.get("overall_score") is not None]


def _fmt(value, digits: int = 1, suffix: str = "") -> str:
    if value is None:
        return "N/A"
    return f"{value:.{digits}f}{suffix}"


def _sentiment_breakdown(session: dict) -> list[tuple[str, int, float]]:
    counts = [
        ("Positive", session.get("positive_sentiment_count") or 0),
        ("Neutral", session.get("neutral_sentiment_count") or 0),
        ("Negative", session.get("negative_sentiment_count") or 0),
    ]
    total = sum(c for _, c in counts)
    return [(label, count, round(count / total * 100, 1) if total else 0.0) for label, count in counts]


def _score_distribution(files: list[dict]) -> list[tuple[str, int]]:
    buckets = {label: 0 for label, _ in SCORE_BANDS}
    for score in _scores(files):
        for label, floor in SCORE_BANDS:
            if score >= floor:
                buckets[label] += 1
                break
    return list(buckets.items())


# ============================================
# Excel
# ============================================

def _summary_frame(session: dict) -> pd.DataFrame:
    rows = [
        ("Session Name", session.get("session_name")),
        ("Created", session.get("created_at")),
        ("Source Language", session.get("source_language")),
        ("Status", session.get("status")),
        ("Total Files", session.get("total_files")),
        ("Completed Files", session.get("completed_files")),
        ("Failed Files", session.get("failed_files")),
        ("Average Overall Score", session.get("avg_overall_score")),
        ("Average Call Opening Score", session.get("avg_call_opening_score")),
        ("Average Call Closing Score", session.get("avg_call_closing_score")),
        ("Average Speaking Quality Score", session.get("avg_speaking_quality_score")),
        ("Positive Sentiment Count", session.get("positive_sentiment_count")),
        ("Neutral Sentiment Count", session.get("neutral_sentiment_count")),
        ("Negative Sentiment Count", session.get("negative_sentiment_count")),
        ("Positive Sentiment %", session.get("positive_sentiment_percentage")),
        ("Top Keywords", ", ".join(session.get("top_keywords") or [])),
        ("Total Processing Time (s)", session.get("total_processing_time")),
        ("Batch Summary", session.get("batch_summary")),
        ("Recommendations", session.get("recommendations")),
    ]
    return pd.DataFrame(rows, columns=["Metric", "Value"])


def _results_frame(files: list[dict]) -> pd.DataFrame:
    rows = [
        {
            "#": f.get("processing_order"),
            "File Name": f.get("file_name"),
            "Status": f.get("status"),
            "Overall Score": f.get("overall_score"),
            "Call Opening": f.get("call_opening_score"),
            "Call Closing": f.get("call_closing_score"),
            "Speaking Quality": f.get("speaking_quality_score"),
            "Customer Sentiment": f.get("customer_sentiment"),
            "Agent Sentiment": f.get("agent_sentiment"),
            "Call Summary": f.get("call_summary"),
            "Agent Coaching": f.get("agent_coaching"),
            "Keywords": ", ".join(f.get("keywords") or []),
            "Processing Time (s)": f.get("processing_time"),
            "Error": f.get("error_message"),
        }
        for f in files
    ]
    return pd.DataFrame(rows, columns=[
        "#", "File Name", "Status", "Overall Score", "Call Opening", "Call Closing",
        "Speaking Quality", "Customer Sentiment", "Agent Sentiment", "Call Summary",
        "Agent Coaching", "Keywords", "Processing Time (s)", "Error",
    ])


def _statistics_frame(session: dict, files: list[dict]) -> pd.DataFrame:
    scores = _scores(files)
    rows = [
        ("Overall Score", "Average", round(sum(scores) / len(scores), 2) if scores else None),
        ("Overall Score", "Maximum", max(scores) if scores else None),
        ("Overall Score", "Minimum", min(scores) if scores else None),
    ]
    for label, count, pct in _sentiment_breakdown(session):
        rows.append(("Customer Sentiment", label, f"{count} ({pct}%)"))
    for label, count in _score_distribution(files):
        rows.append(("Score Distribution", label, count))
    return pd.DataFrame(rows, columns=["Category", "Metric", "Value"])


def generate_excel_report(session: dict, files: list[dict]) -> bytes:
    """Workbook with Analysis Summary, Individual Results and Statistics sheets."""
    sheets = {
        "Analysis Summary": (_summary_frame(session), {"A": 32, "B": 80}),
        "Individual Results": (_results_frame(files), {"B": 30, "J": 60, "K": 60, "L": 40, "N": 40}),
        "Statistics": (_statistics_frame(session, files), {"A": 22, "B": 20, "C": 16}),
    }
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for name, (frame, widths) in sheets.items():
            frame.to_excel(writer, sheet_name=name, index=False)
            worksheet = writer.sheets[name]
            for cell in worksheet[1]:
                cell.font = Font(bold=True)
            for column, width in widths.items():
                worksheet.column_dimensions[column].width = width
    return buffer.getvalue()


# ============================================
# Text
# ============================================

def generate_text_summary(session: dict, files: list[dict], now: datetime | None = None) -> str:
    avg = session.get("avg_overall_score")
    lines = [
        SUMMARY_BANNER,
        "=" * len(SUMMARY_BANNER),
        "",
        f"Session: {session.get('session_name')}",
        f"Created: {session.get('created_at')}",
        f"Source Language: {session.get('source_language')}",
        f"Status: {session.get('status')}",
        f"Files: {session.get('total_files')} total, "
        f"{session.get('completed_files')} completed, {session.get('failed_files')} failed",
        "",
        "PERFORMANCE OVERVIEW",
        "-" * 20,
        f"Overall Score: {_fmt(avg)}/10"
        + (f" ({performance_rating(avg)})" if avg is not None else ""),
        f"Call Opening: {_fmt(session.get('avg_call_opening_score'))}/10",
        f"Speaking Quality: {_fmt(session.get('avg_speaking_quality_score'))}/10",
        f"Call Closing: {_fmt(session.get('avg_call_closing_score'))}/10",
        "",
        "CUSTOMER SENTIMENT",
        "-" * 18,
    ]
    for label, count, pct in _sentiment_breakdown(session):
        lines.append(f"{label}: {count} ({pct}%)")

    lines += ["", "TOP KEYWORDS", "-" * 12, ", ".join(session.get("top_keywords") or []) or "None"]

    if session.get("batch_summary"):
        lines += ["", "BATCH SUMMARY", "-" * 13, session["batch_summary"]]
    if session.get("recommendations"):
        lines += ["", "RECOMMENDATIONS", "-" * 15]
        lines += [f"- {r}" for r in session["recommendations"].splitlines() if r.strip()]

    lines += ["", "INDIVIDUAL RESULTS", "-" * 18]
    for f in files:
        line = f"{f.get('processing_order')}. {f.get('file_name')} [{f.get('status')}]"
        if f.get("status") == "completed":
            line += f" score {_fmt(f.get('overall_score'))}/10, customer {f.get('customer_sentiment')}"
        elif f.get("error_message"):
            line += f" error: {f['error_message']}"
        lines.append(line)

    stamp = (now or datetime.now(timezone.utc)).isoformat()
    lines += ["", f"Generated on: {stamp}", ""]
    return "\n".join(lines)


# ============================================
# PDF
# ============================================

_PDF_REPLACEMENTS = {
    "—": "-", "–": "-", "‐": "-", "‑": "-", "−": "-",
    "“": '"', "”": '"', "‘": "'", "’": "'",
    "…": "...", "•": "-", "·": ".",
}


def _pdf_text(value) -> str:
    """Core PDF fonts are latin-1 only."""
    text = "" if value is None else str(value)
    for src, dst in _PDF_REPLACEMENTS.items():
        text = text.replace(src, dst)
    return text.encode("latin-1", "replace").decode("latin-1")


def _truncate(text: str, length: int) -> str:
    return text if len(text) <= length else text[: length - 3] + "..."


class _ReportPDF(FPDF):
    def heading(self, text: str) -> None:
        self.ln(4)
        self.set_font("helvetica", "B", 13)
        self.cell(0, 8, _pdf_text(text), new_x="LMARGIN", new_y="NEXT")
        self.set_font("helvetica", size=10)

    def paragraph(self, text: str) -> None:
        self.multi_cell(0, 5, _pdf_text(text), new_x="LMARGIN", new_y="NEXT")

    def footer(self) -> None:
        self.set_y(-12)
        self.set_font("helvetica", "I", 8)
        self.cell(0, 8, f"Page {self.page_no()}", align="C")


def generate_pdf_report(session: dict, files: list[dict]) -> bytes:
    pdf = _ReportPDF()
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()

    pdf.set_font("helvetica", "B", 16)
    pdf.cell(0, 10, "Bulk Call Analysis Report", new_x="LMARGIN", new_y="NEXT", align="C")
    pdf.set_font("helvetica", size=10)
    pdf.cell(0, 6, _pdf_text(session.get("session_name")), new_x="LMARGIN", new_y="NEXT", align="C")

    pdf.heading("Overview")
    avg = session.get("avg_overall_score")
    for label, value in [
        ("Files", f"{session.get('total_files')} total, {session.get('completed_files')} completed, "
                  f"{session.get('failed_files')} failed"),
        ("Language", session.get("source_language")),
        ("Overall score", f"{_fmt(avg)}/10" + (f" ({performance_rating(avg)})" if avg is not None else "")),
        ("Call opening", f"{_fmt(session.get('avg_call_opening_score'))}/10"),
        ("Speaking quality", f"{_fmt(session.get('avg_speaking_quality_score'))}/10"),
        ("Call closing", f"{_fmt(session.get('avg_call_closing_score'))}/10"),
    ]:
        pdf.set_font("helvetica", "B", 10)
        pdf.cell(45, 6, _pdf_text(label))
        pdf.set_font("helvetica", size=10)
        pdf.cell(0, 6, _pdf_text(value), new_x="LMARGIN", new_y="NEXT")

    pdf.heading("Customer Sentiment")
    for label, count, pct in _sentiment_breakdown(session):
        pdf.cell(0, 6, f"{label}: {count} ({pct}%)", new_x="LMARGIN", new_y="NEXT")

    if session.get("top_keywords"):
        pdf.heading("Top Keywords")
        pdf.paragraph(", ".join(session["top_keywords"]))

    if session.get("batch_summary"):
        pdf.heading("Batch Summary")
        pdf.paragraph(session["batch_summary"])

    if session.get("recommendations"):
        pdf.heading("Recommendations")
        for line in session["recommendations"].splitlines():
            if line.strip():
                pdf.paragraph(f"- {line.strip()}")

    pdf.heading("Individual Results")
    widths = [10, 70, 22, 20, 30, 30]
    pdf.set_font("helvetica", "B", 9)
    for width, title in zip(widths, ["#", "File", "Status", "Score", "Customer", "Agent"]):
        pdf.cell(width, 7, title, border=1)
    pdf.ln()
    pdf.set_font("helvetica", size=9)
    for f in files:
        row = [
            str(f.get("processing_order") or ""),
            _truncate(_pdf_text(f.get("file_name")), 36),
            f.get("status") or "",
            _fmt(f.get("overall_score")) if f.get("status") == "completed" else "-",
            f.get("customer_sentiment") or "-",
            f.get("agent_sentiment") or "-",
        ]
        for width, value in zip(widths, row):
            pdf.cell(width, 6, value, border=1)
        pdf.ln()

    for f in _completed(files):
        if not f.get("call_summary"):
            continue
        pdf.heading(_truncate(f"{f.get('processing_order')}. {f.get('file_name')}", 80))
        pdf.paragraph(f["call_summary"])
        if f.get("agent_coaching"):
            pdf.set_font("helvetica", "I", 9)
            pdf.paragraph(f"Coaching: {f['agent_coaching']}")
            pdf.set_font("helvetica", size=10)

    return bytes(pdf.output())


# ============================================
# Archives
# ============================================

def generate_zip_archive(
    session: dict,
    files: list[dict],
    formats: list[str] | None = None,
) -> bytes:
    """ZIP with the requested report formats plus summary.txt."""
    formats = [f for f in (formats or list(EXPORT_FORMATS)) if f in EXPORT_FORMATS]
    session_id = session.get("id")
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        if "excel" in formats:
            archive.writestr(f"bulk_analysis_{session_id}.xlsx", generate_excel_report(session, files))
        if "pdf" in formats:
            archive.writestr(f"bulk_analysis_{session_id}.pdf", generate_pdf_report(session, files))
        archive.writestr("summary.txt", generate_text_summary(session, files))
    return buffer.getvalue()


# ============================================
# ML training exports
# ============================================

def _training_example(f: dict) -> dict:
    return {
        "id": f.get("id"),
        "file_name": f.get("file_name"),
        "input": {
            "transcription": f.get("transcription"),
            "translation": f.get("translation"),
        },
        "labels": {
            "overall_score": f.get("overall_score"),
            "call_opening_score": f.get("call_opening_score"),
            "call_closing_score": f.get("call_closing_score"),
            "speaking_quality_score": f.get("speaking_quality_score"),
            "customer_sentiment": {
                "label": f.get("customer_sentiment"),
                "score": f.get("customer_sentiment_score"),
                "justification": f.get("customer_sentiment_justification"),
            },
            "agent_sentiment": {
                "label": f.get("agent_sentiment"),
                "score": f.get("agent_sentiment_score"),
                "justification": f.get("agent_sentiment_justification"),
            },
        },
        "outputs": {
            "call_summary": f.get("call_summary"),
            "agent_coaching": f.get("agent_coaching"),
            "keywords": f.get("keywords") or [],
        },
        "analysis": {
            "call_opening": f.get("call_opening_analysis"),
            "call_closing": f.get("call_closing_analysis"),
            "speaking_quality": f.get("speaking_quality_analysis"),
        },
        "metadata": {
            "file_size": f.get("file_size"),
            "processing_time": f.get("processing_time"),
            "completed_at": f.get("completed_at"),
        },
    }


def build_training_dataset(session: dict, files: list[dict], now: datetime | None = None) -> dict:
    completed = _completed(files)
    return {
        "metadata": {
            "session_id": session.get("id"),
            "session_name": session.get("session_name"),
            "source_language": session.get("source_language"),
            "created_at": session.get("created_at"),
            "exported_at": (now or datetime.now(timezone.utc)).isoformat(),
            "total_files": session.get("total_files"),
            "training_examples": len(completed),
            "format_version": "1.0",
            "description": "Call center quality analysis dataset (transcripts with sentiment and coaching labels)",
        },
        "aggregateMetrics": {
            "avg_overall_score": session.get("avg_overall_score"),
            "avg_call_opening_score": session.get("avg_call_opening_score"),
            "avg_call_closing_score": session.get("avg_call_closing_score"),
            "avg_speaking_quality_score": session.get("avg_speaking_quality_score"),
            "sentiment_distribution": {
                "positive": session.get("positive_sentiment_count") or 0,
                "neutral": session.get("neutral_sentiment_count") or 0,
                "negative": session.get("negative_sentiment_count") or 0,
            },
            "positive_sentiment_percentage": session.get("positive_sentiment_percentage"),
            "top_keywords": session.get("top_keywords") or [],
        },
        "trainingExamples": [_training_example(f) for f in completed],
        "schema": {
            "input": "Source-language transcription and its English translation",
            "labels": "0-10 coaching scores and POSITIVE/NEUTRAL/NEGATIVE sentiment labels with scores in [-1, 1]",
            "outputs": "Call summary, coaching feedback and keywords",
            "analysis": "Per-aspect sentiment detail for opening, closing and speaking quality",
        },
    }


def generate_training_json(session: dict, files: list[dict], now: datetime | None = None) -> str:
    return json.dumps(build_training_dataset(session, files, now), indent=2, ensure_ascii=False)


def generate_training_csv(files: list[dict]) -> str:
    """One row per completed file, keywords joined with ';'."""
    rows = []
    for f in _completed(files):
        row = {column: f.get(column) for column in TRAINING_CSV_COLUMNS}
        row["keywords"] = ";".join(f.get("keywords") or [])
        rows.append(row)
    return pd.DataFrame(rows, columns=TRAINING_CSV_COLUMNS).to_csv(index=False)


TRAINING_README = """# Call Quality Training Dataset

Exported from bulk analysis session {session_id} ({session_name}).

## Files
- training_data.json: full dataset (metadata, aggregateMetrics, trainingExamples, schema)
- training_data.csv: flat table, one row per analyzed call, keywords separated by ';'
- dataset_metadata.json: session information and export statistics

## Labels
- overall_score, call_opening_score, call_closing_score, speaking_quality_score: 0-10
- customer_sentiment, agent_sentiment: POSITIVE, NEUTRAL or NEGATIVE
- *_sentiment_score: confidence in [-1, 1]

## Loading
```python
import pandas as pd

df = pd.read_csv("training_data.csv")
X = df[["transcription", "translation", "call_summary"]]
y = df["overall_score"]
```

Generated on: {generated_at}
"""


def generate_training_package(session: dict, files: list[dict], now: datetime | None = None) -> bytes:
    """ZIP with the JSON and CSV datasets, dataset metadata and a README."""
    now = now or datetime.now(timezone.utc)
    metadata = {
        "session_id": session.get("id"),
        "session_name": session.get("session_name"),
        "source_language": session.get("source_language"),
        "total_files": session.get("total_files"),
        "completed_files": session.get("completed_files"),
        "failed_files": session.get("failed_files"),
        "training_examples": len(_completed(files)),
        "csv_columns": TRAINING_CSV_COLUMNS,
        "generated_at": now.isoformat(),
    }
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("training_data.json", generate_training_json(session, files, now))
        archive.writestr("training_data.csv", generate_training_csv(files))
        archive.writestr("dataset_metadata.json", json.dumps(metadata, indent=2, ensure_ascii=False))
        archive.writestr("README.md", TRAINING_README.format(
            session_id=session.get("id"),
            session_name=session.get("session_name"),
            generated_at=now.isoformat(),
        ))
    return buffer.getvalue()
