#!/usr/bin/env python3
"""
Region Report - Show how a DAT's games spread across regions before filtering.

Uses dat-region-filter's own parse_dat() and count_regions(), so the numbers
match what a filter run would see.

Usage:
    python tools/region_report.py "Sony - PlayStation - Datfile (10852).dat"
    python tools/region_report.py dats/                  # Every .dat/.xml in a folder
    python tools/region_report.py dats/ --json           # Machine-readable output
"""

import sys
import json
import argparse
import importlib.util
from pathlib import Path

_spec = importlib.util.spec_from_file_location(
    "dat_region_filter", Path(__file__).parent.parent / "dat_region_filter.py"
)
_module = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(_module)

parse_dat = _module.parse_dat
count_regions = _module.count_regions
read_dat_file = _module.read_dat_file
DatError = _module.DatError

# Untagged/multi-region listings are cut off after this many names
LIST_LIMIT = 30


# ---------------------------------------------------------------------------
# Report building
# ---------------------------------------------------------------------------

def build_report(dat_path):
    """Parse one DAT and collect its region statistics as a plain dict."""
    parsed = parse_dat(read_dat_file(Path(dat_path)))
    return {
        'file': Path(dat_path).name,
        'name': parsed.header.name,
        'description': parsed.header.description,
        'descriptor': parsed.descriptor,
        'normalized_descriptor': parsed.normalized_descriptor,
        'version': parsed.version_label,
        'total_games': len(parsed.games),
        'regions': count_regions(parsed),
        'untagged': [game.name for game in parsed.games if not game.regions],
        'multi_region': [(game.name, game.regions) for game in parsed.games if len(game.regions) > 1],
    }


def find_dat_files(path):
    """A single DAT file, or every .dat/.xml directly inside a directory."""
    path = Path(path)
    if path.is_file():
        return [path]
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.is_file() and p.suffix.lower() in ('.dat', '.xml'))
    return []


# ---------------------------------------------------------------------------
# Report output
# ---------------------------------------------------------------------------

def _print_limited(names, marker):
    for name in names[:LIST_LIMIT]:
        print(f"    {marker} {name}")
    if len(names) > LIST_LIMIT:
        print(f"    ... and {len(names) - LIST_LIMIT} more")


def print_report(report):
    print()
    print('=' * 62)
    print(f"  REGION REPORT -- {report['file']}")
    print('=' * 62)

    print()
    print("HEADER")
    print(f"  Name:       {report['name']}")
    print(f"  Descriptor: {report['descriptor']} -> {report['normalized_descriptor']}")
    print(f"  Version:    {report['version'] or '(none)'}")
    print(f"  Games:      {report['total_games']:,}")

    print()
    print('-' * 62)
    print(f"1. REGIONS ({len(report['regions'])} found)")
    print('-' * 62)
    total = report['total_games'] or 1
    for region, count in sorted(report['regions'].items(), key=lambda item: (-item[1], item[0])):
        print(f"  {region:<20} {count:>7,}  ({count * 100 / total:5.1f}%)")

    print()
    print('-' * 62)
    print(f"2. NO REGION DETECTED ({len(report['untagged'])} found)")
    print('-' * 62)
    if report['untagged']:
        _print_limited(report['untagged'], '?')
    else:
        print("  None")

    print()
    print('-' * 62)
    print(f"3. MULTI-REGION GAMES ({len(report['multi_region'])} found)")
    print('-' * 62)
    if report['multi_region']:
        _print_limited([f"{name} [{', '.join(regions)}]" for name, regions in report['multi_region']], '*')
    else:
        print("  None")
    print()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Report the region spread of Redump DAT files',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""examples:
  python tools/region_report.py my.dat          # One DAT
  python tools/region_report.py dats/           # Every DAT in a folder
  python tools/region_report.py dats/ --json    # JSON instead of text
""",
    )
    parser.add_argument('path', help='DAT file or directory of DAT files')
    parser.add_argument('--json', action='store_true', help='Print the reports as JSON')
    args = parser.parse_args(argv)

    dat_files = find_dat_files(args.path)
    if not dat_files:
        print(f"No DAT files found in {args.path}", file=sys.stderr)
        return 1

    reports = []
    failed = 0
    for dat_path in dat_files:
        try:
            reports.append(build_report(dat_path))
        except DatError as e:
            failed += 1
            print(f"  {dat_path.name}: {e}", file=sys.stderr)

    if args.json:
        print(json.dumps(reports, indent=2, ensure_ascii=False))
    else:
        for report in reports:
            print_report(report)
        if len(dat_files) > 1:
            print('=' * 62)
            print(f"  {len(reports)} DAT files reported, {failed} failed")
            print('=' * 62)

    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
