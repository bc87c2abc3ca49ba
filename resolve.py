"""cellar-resolver – resolve wine label photos and cellar spreadsheets to catalog entries."""

import argparse
import logging
import sys
from pathlib import Path

from resolver import ExtractedFields
from resolver.bulk import commit, preview
from resolver.extraction import StaticExtractor
from resolver.matching import default_threshold
from resolver.pipeline import JobState, ResolutionPipeline, RoutingPolicy
from resolver.quality import QCConfig
from resolver.reader import auto_map_columns, read_catalog, read_table
from resolver.repository import InMemoryCatalog, InMemoryReviewQueue
from resolver.reporter import (
    print_commit_summary,
    print_summary,
    write_csv_report,
    write_html_report,
)

MIME_TYPES = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.webp': 'image/webp',
    '.heic': 'image/heic',
}


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        description='Resolve wine labels and cellar spreadsheets against a catalog.',
        prog='resolve.py',
    )
    parser.add_argument(
        '--catalog', required=True, type=Path,
        help='Path to the catalog CSV file',
    )
    parser.add_argument(
        '--threshold', type=float, default=None,
        help='Match admission threshold (default: MATCH_SCORE_MIN or 0.70)',
    )
    parser.add_argument(
        '--verbose', action='store_true',
        help='Enable debug logging',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    imp = sub.add_parser('import', help='Preview and optionally commit a spreadsheet')
    imp.add_argument('--file', required=True, type=Path, help='Spreadsheet to import')
    imp.add_argument('--output', type=Path, help='Path for the preview report (CSV)')
    imp.add_argument('--html', action='store_true', help='Also write an HTML report')
    imp.add_argument('--summary', action='store_true', help='Print totals to stdout')
    imp.add_argument('--commit', action='store_true', help='Commit after the preview')
    imp.add_argument('--owner', help='Owner id for committed items')
    imp.add_argument(
        '--accept-likely', action='store_true',
        help='Commit likely matches to their best candidate',
    )

    scan = sub.add_parser('scan', help='Quality-check a label photo and match its fields')
    scan.add_argument('--image', required=True, type=Path, help='Label photograph')
    scan.add_argument('--producer', required=True, help='Producer read from the label')
    scan.add_argument('--wine-name', required=True, help='Wine name read from the label')
    scan.add_argument('--vintage', type=int, help='Vintage read from the label')
    scan.add_argument('--owner', help='Owner id for auto-committed items')
    scan.add_argument(
        '--accept-likely', action='store_true',
        help='Auto-commit likely matches',
    )
    scan.add_argument(
        '--no-enrichment', action='store_true',
        help='Send unmatched labels to review instead of external search',
    )
    return parser


def run_import(args: argparse.Namespace, catalog: InMemoryCatalog, threshold: float) -> int:
    """Preview (and optionally commit) one spreadsheet."""
    headers, raw_rows = read_table(args.file)
    mapping = auto_map_columns(headers)
    if 'wine_name' not in mapping and 'producer' not in mapping:
        logging.error("No wine name or producer column found in %s", args.file)
        return 1

    response = preview(raw_rows, mapping, catalog, threshold)

    if args.output:
        write_csv_report(response.rows, args.output)
        if args.html:
            write_html_report(response, args.output.with_suffix('.html'), args.file.name)

    if args.summary:
        print_summary(response, args.file.name)

    if args.commit:
        summary = commit(response, catalog, args.owner, args.accept_likely)
        print_commit_summary(summary)
    return 0


def run_scan(args: argparse.Namespace, catalog: InMemoryCatalog, threshold: float) -> int:
    """Run one label photo through the resolution pipeline."""
    fields = ExtractedFields(
        producer=args.producer,
        wine_name=args.wine_name,
        vintage=args.vintage,
        confidence={'producer': 1.0, 'wine_name': 1.0, 'vintage': 1.0 if args.vintage else 0.0},
    )
    policy = RoutingPolicy(
        accept_likely_matches=args.accept_likely,
        allow_enrichment=not args.no_enrichment,
        threshold=threshold,
    )
    queue = InMemoryReviewQueue()
    mime_type = MIME_TYPES.get(args.image.suffix.lower(), 'image/jpeg')

    with ResolutionPipeline(
        catalog,
        extractor=StaticExtractor(fields),
        review_queue=queue,
        qc_config=QCConfig.from_env(),
        policy=policy,
        owner_id=args.owner,
    ) as pipeline:
        job = pipeline.run_bytes(args.image.read_bytes(), mime_type)

    outcome = job.outcome
    print(f"\n=== Label scan: {args.image.name} ===")
    print(f"Result:   {outcome.state.value}")
    print(f"Message:  {outcome.message}")
    if job.quality and job.quality.metrics:
        m = job.quality.metrics
        print(f"Quality:  blur={m.blur_variance:.1f} brightness={m.brightness_mean:.1f} "
              f"sharpness={m.sharpness:.1f} size={m.width}x{m.height}")
    for reason in job.quality.reasons if job.quality else ():
        print(f"  - {reason}")
    for tip in outcome.tips:
        print(f"  * {tip}")
    if job.match_result:
        for candidate in job.match_result.candidates[:5]:
            entry = candidate.entry
            print(f"  #{candidate.catalog_id:<6} {candidate.confidence:.2f}  "
                  f"{entry.display_name if entry else ''}")
    if outcome.search_text:
        print(f"Search:   {outcome.search_text}")
    print()
    return 0 if outcome.state is JobState.AUTO_COMMITTED else 2


def main() -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(levelname)s: %(message)s',
    )

    if args.command == 'import' and args.commit and not args.owner:
        parser.error('--owner is required with --commit.')

    threshold = args.threshold if args.threshold is not None else default_threshold()
    catalog = InMemoryCatalog(read_catalog(args.catalog))

    if args.command == 'import':
        sys.exit(run_import(args, catalog, threshold))
    sys.exit(run_scan(args, catalog, threshold))


if __name__ == '__main__':
    main()
