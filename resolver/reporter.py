"""Report generation for import previews (CSV, HTML, summary)."""

import csv
import logging
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from resolver import ImportRow
from resolver.bulk import CommitSummary, PreviewResponse

log = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / 'templates'

CSV_COLUMNS = [
    'Row',
    'Producer',
    'Wine_Name',
    'Vintage',
    'Quantity',
    'Where_Stored',
    'Status',
    'Match_Status',
    'Match_Score',
    'Catalog_ID',
    'Errors',
]


def _row_to_dict(row: ImportRow) -> dict:
    """Convert an ImportRow to a flat dict for CSV/HTML output."""
    return {
        # Spreadsheet row number: header is line 1
        'Row': str(row.row_index + 2),
        'Producer': row.producer or '',
        'Wine_Name': row.wine_name or '',
        'Vintage': str(row.vintage) if row.vintage else '',
        'Quantity': str(row.quantity),
        'Where_Stored': row.where_stored or '',
        'Status': row.status,
        'Match_Status': 'ERROR' if row.errors else row.match_status.value,
        'Match_Score': f'{row.match_score:.4f}' if row.match_score is not None else '',
        'Catalog_ID': str(row.matched_catalog_id) if row.matched_catalog_id is not None else '',
        'Errors': ', '.join(row.errors),
    }


def write_csv_report(rows: list[ImportRow], output_path: Path) -> None:
    """Write preview rows as a CSV report.

    Uses UTF-8 with BOM (utf-8-sig) and semicolon delimiter so the file
    opens cleanly in Excel.

    Args:
        rows: Previewed import rows.
        output_path: Path for the output CSV file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w', newline='', encoding='utf-8-sig') as f:
        writer = csv.DictWriter(
            f, fieldnames=CSV_COLUMNS, delimiter=';', extrasaction='ignore',
        )
        writer.writeheader()
        for row in rows:
            writer.writerow(_row_to_dict(row))

    log.info("CSV report written: %s (%d rows)", output_path, len(rows))


def write_html_report(
    response: PreviewResponse,
    output_path: Path,
    title: str = '',
) -> None:
    """Write a preview as an HTML report using Jinja2.

    Args:
        response: Preview to render.
        output_path: Path for the output HTML file.
        title: Name of the imported file (for the report title).
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=True,
    )
    template = env.get_template('preview.html')

    html = template.render(
        title=title,
        rows=[_row_to_dict(r) for r in response.rows],
        stats=response.stats,
        columns=CSV_COLUMNS,
    )

    output_path.write_text(html, encoding='utf-8')
    log.info("HTML report written: %s", output_path)


def print_summary(response: PreviewResponse, name: str = '') -> None:
    """Print preview totals to stdout."""
    stats = response.stats

    print(f"\n=== Import preview: {name} ===")
    print(f"Rows total:                {stats.total:>5}")
    print(f"Valid rows:                {stats.valid:>5}")
    print(f"Exact matches:             {stats.exact_matches:>5}")
    print(f"Likely matches:            {stats.likely_matches:>5}")
    print(f"No match:                  {stats.no_matches:>5}")
    print(f"Rows with errors:          {stats.errors:>5}")
    print()


def print_commit_summary(summary: CommitSummary) -> None:
    """Print commit totals to stdout."""
    print("\n=== Import commit ===")
    print(f"New catalog entries:       {summary.inserted_entities:>5}")
    print(f"Items upserted:            {summary.upserted_items:>5}")
    print(f"Bottles total:             {summary.total_quantity:>5}")
    print(f"Rows merged:               {summary.skipped_rows:>5}")
    print(f"Rows with errors:          {summary.error_rows:>5}")
    print()
