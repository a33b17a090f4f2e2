#!/usr/bin/env python3
"""
DAT Region Filter - Cut a Redump DAT down to the regions you collect.

Reads a Logiqx-style XML datafile (as published by Redump), works out which
regions each game belongs to from its naming tags, and writes a new DAT that
keeps only the games for the regions you pick.

What it does:
- Detects regions from the first parenthesized tag that names one, e.g.
  "Halo (USA, Europe) (En,Fr)" -> USA, Europe
- Normalizes loose region names (US, PAL, UK, ...) to one vocabulary
- Rewrites the header name/description for the subset:
  "Microsoft - Xbox (USA, World) - Datfile (1107) (2025-11-07 05-38-55)"
- Suggests a matching output filename
- Copies every kept <game> through untouched
"""

import os
import re
import sys
import copy
import codecs
import json
import tempfile
import itertools
import threading
import xml.etree.ElementTree as ET
from pathlib import Path
from types import MappingProxyType
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Dict, List, Tuple, Callable, Union


# =============================================================================
# REGION VOCABULARY
# =============================================================================

# Lowercase free-form names -> canonical region label.
# Changing this table changes the region list of every DAT; keep it stable.
REGION_SYNONYMS = MappingProxyType({
    'world': 'World',
    'worldwide': 'World',
    'usa': 'USA',
    'u.s.a.': 'USA',
    'us': 'USA',
    'u.s.': 'USA',
    'north america': 'USA',
    'europe': 'Europe',
    'eur': 'Europe',
    'pal': 'Europe',
    'japan': 'Japan',
    'jpn': 'Japan',
    'asia': 'Asia',
    'asia pacific': 'Asia',
    'asia-pacific': 'Asia',
    'australia': 'Australia',
    'australasia': 'Australia',
    'brazil': 'Brazil',
    'canada': 'Canada',
    'china': 'China',
    'denmark': 'Denmark',
    'finland': 'Finland',
    'france': 'France',
    'germany': 'Germany',
    'hong kong': 'Hong Kong',
    'italy': 'Italy',
    'korea': 'Korea',
    'south korea': 'Korea',
    'republic of korea': 'Korea',
    'mexico': 'Mexico',
    'netherlands': 'Netherlands',
    'new zealand': 'New Zealand',
    'norway': 'Norway',
    'russia': 'Russia',
    'spain': 'Spain',
    'sweden': 'Sweden',
    'switzerland': 'Switzerland',
    'taiwan': 'Taiwan',
    'uk': 'United Kingdom',
    'united kingdom': 'United Kingdom',
    'england': 'United Kingdom',
    'ireland': 'Ireland',
    'poland': 'Poland',
    'portugal': 'Portugal',
    'belgium': 'Belgium',
    'greece': 'Greece',
    'czech republic': 'Czech Republic',
    'south africa': 'South Africa',
    'latin america': 'Latin America',
    'middle east': 'Middle East',
    'africa': 'Africa',
    'asia minor': 'Asia',
    'united states': 'USA',
})

# Games with no detectable region are counted under this label
DEFAULT_REGION = 'Unknown'

CANONICAL_REGIONS = frozenset(REGION_SYNONYMS.values()) | {DEFAULT_REGION}

# Pre-selected when present in a freshly loaded DAT
PREFERRED_DEFAULT_REGIONS = ('USA', 'World')

DEFAULT_DESCRIPTOR = 'Datfile'
DEFAULT_EXTENSION = '.dat'

XML_DECLARATION = '<?xml version="1.0"?>'
DATAFILE_DOCTYPE = ('<!DOCTYPE datafile PUBLIC "-//Logiqx//DTD ROM Management Datafile//EN" '
                    '"http://www.logiqx.com/Dats/datafile.dtd">')

# Header fields with a dedicated DatHeader attribute, in output order
HEADER_FIELDS = ('name', 'description', 'version', 'date', 'author', 'homepage', 'url')

REGION_GROUP_PATTERN = re.compile(r'\(([^()]+)\)')
FILENAME_PATTERN = re.compile(r'^(.*?)\s*-\s*([^-()]+?)\s*\((\d+)\)(.*)$')
XML_ENCODING_PATTERN = re.compile(rb'^<\?xml[^>]*?encoding=["\']([A-Za-z0-9._-]+)["\']')

# Comments and CDATA are matched only so a "<game" inside them is skipped
GAME_BLOCK_PATTERN = re.compile(
    r'<!--.*?-->|<!\[CDATA\[.*?\]\]>'
    r'|<game\b(?:[^>"\']|"[^"]*"|\'[^\']*\')*?(?:/>|>.*?</game\s*>)',
    re.DOTALL,
)


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass
class DatHeader:
    """The <header> block of a DAT."""
    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    date: Optional[str] = None
    author: Optional[str] = None
    homepage: Optional[str] = None
    url: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)  # Unrecognized fields, by tag


@dataclass
class DatRom:
    attributes: Dict[str, str]


@dataclass
class DatGame:
    """One <game> entry."""
    name: str
    description: str
    category: str
    roms: List[DatRom]
    regions: List[str]  # Canonical labels, empty when none were detected
    raw: ET.Element = field(repr=False, compare=False)
    source_text: Optional[str] = field(default=None, repr=False, compare=False)  # Exact "<game ...</game>" text


@dataclass
class ParsedDat:
    header: DatHeader
    games: List[DatGame]
    available_regions: List[str]
    descriptor: str
    normalized_descriptor: str
    version_label: Optional[str] = None
    root_attributes: Dict[str, str] = field(default_factory=dict)
    root_extras: List[ET.Element] = field(default_factory=list, repr=False)
    header_extra_nodes: Dict[str, ET.Element] = field(default_factory=dict, repr=False)


@dataclass
class FilterSummary:
    initial_games: int
    filtered_games: int
    removed_games: int
    selected_regions: List[str]
    region_label: str
    descriptor: str
    normalized_descriptor: str
    version_label: Optional[str] = None


@dataclass
class FilteredDat:
    xml: str
    filename: str
    header: DatHeader
    games: List[DatGame]
    summary: FilterSummary


# =============================================================================
# ERRORS
# =============================================================================

class DatError(Exception):
    """Base class for failures while loading, filtering or saving a DAT."""


class InvalidDatError(DatError):
    """The document is not a usable datafile."""


class NoMatchesError(DatError):
    """The region selection left no games."""


class DatIOError(DatError):
    """A DAT could not be read or written."""


class NoDatLoadedError(DatError):
    """An operation needed a loaded DAT but none is loaded."""


# =============================================================================
# REGION DETECTION
# =============================================================================

def tokenize_region_segment(segment: str) -> List[str]:
    """Split the inside of a "(...)" group into candidate region tokens."""
    tokens = []
    for part in re.split(r'[/,&]', segment):
        for piece in re.split(r'\s{2,}', part.strip()):
            piece = piece.strip()
            if piece:
                tokens.append(piece)
    return tokens


def normalize_region_token(token: Optional[str]) -> Optional[str]:
    """Map a loose region name to its canonical label, or None if unknown."""
    if not token:
        return None
    cleaned = re.sub(r'\s+', ' ', re.sub(r'\.+', '', token)).strip()
    if not cleaned:
        return None

    synonym = REGION_SYNONYMS.get(cleaned.lower())
    if synonym:
        return synonym
    if cleaned in CANONICAL_REGIONS:
        return cleaned
    return None


def extract_regions(text: Optional[str]) -> Optional[List[str]]:
    """
    Return the regions named by the first parenthesized group that names any.

    "Some Game (Europe) (En,Fr,De)" -> ['Europe']; the language group is never
    looked at. Returns None when no group yields a known region.
    """
    if not text:
        return None

    for match in REGION_GROUP_PATTERN.finditer(text):
        regions = []
        for token in tokenize_region_segment(match.group(1)):
            region = normalize_region_token(token)
            if region and region not in regions:
                regions.append(region)
        if regions:
            return regions
    return None


def detect_game_regions(name: str, description: str, roms: List[DatRom]) -> List[str]:
    """Regions from the game name, else its description, else its first ROM name."""
    candidates = [name, description]
    if roms:
        candidates.append(roms[0].attributes.get('name'))

    for candidate in candidates:
        regions = extract_regions(candidate)
        if regions:
            return regions
    return []


def collect_available_regions(games: List[DatGame]) -> List[str]:
    """Distinct regions across games, case-insensitively sorted, plus 'Unknown' if any game has none."""
    found = set()
    for game in games:
        if game.regions:
            found.update(game.regions)
        else:
            found.add(DEFAULT_REGION)
    return sorted(found, key=lambda region: (region.casefold(), region))


def count_regions(parsed: ParsedDat) -> Dict[str, int]:
    """Number of games carrying each available region (multi-region games count once per region)."""
    counts = defaultdict(int)
    for game in parsed.games:
        for region in game.regions or [DEFAULT_REGION]:
            counts[region] += 1
    return {region: counts[region] for region in parsed.available_regions}


def pick_default_regions(available: List[str]) -> List[str]:
    return [region for region in PREFERRED_DEFAULT_REGIONS if region in available]


# =============================================================================
# PARSING
# =============================================================================

def _element_text(element: Optional[ET.Element]) -> str:
    if element is None or element.text is None:
        return ''
    return element.text.strip()


def parse_header(header_elem: Optional[ET.Element]) -> Tuple[DatHeader, Dict[str, ET.Element]]:
    """
    Map a <header> element to a DatHeader.

    Returns the header and the original elements of the unrecognized fields,
    which are written back verbatim when the DAT is saved.
    """
    values = {}
    extra = {}
    extra_nodes = {}

    if header_elem is not None:
        for child in header_elem:
            if child.tag in HEADER_FIELDS:
                values.setdefault(child.tag, _element_text(child))
            elif child.tag not in extra:
                extra[child.tag] = _element_text(child)
                extra_nodes[child.tag] = child

    if not values.get('name'):
        raise InvalidDatError('Invalid DAT header: missing <name>.')

    return DatHeader(extra=extra, **values), extra_nodes


def parse_game(game_elem: ET.Element, source_text: Optional[str] = None) -> DatGame:
    if 'name' in game_elem.attrib:
        name = game_elem.get('name')
    else:
        name = _element_text(game_elem.find('name'))
    description = _element_text(game_elem.find('description'))
    category = _element_text(game_elem.find('category'))

    # findall always yields a list, even for a game with a single <rom>
    roms = [DatRom(attributes=dict(rom.attrib)) for rom in game_elem.findall('rom')]

    return DatGame(
        name=name,
        description=description,
        category=category,
        roms=roms,
        regions=detect_game_regions(name, description, roms),
        raw=game_elem,
        source_text=source_text,
    )


def _match_system_descriptor(description: str, system_name: str, total_games: int) -> Optional[str]:
    """'<system> - <descriptor> (<count>)' at the start of the description."""
    if not description:
        return None
    pattern = rf'^{re.escape(system_name)}\s*-\s*(.+?)\s*\({re.escape(str(total_games))}\)'
    match = re.match(pattern, description)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None


def _match_generic_descriptor(description: str) -> Optional[str]:
    match = re.search(r'-\s*([^-()]+)\s*\(\d+\)', description)
    if match and match.group(1).strip():
        return match.group(1).strip()
    if re.search(r'datfile', description, re.IGNORECASE):
        return DEFAULT_DESCRIPTOR
    return None


def normalize_descriptor_label(label: str) -> str:
    """'Datfile'-ish and disc-ish descriptors all become 'Datfile'."""
    if re.search(r'datfile|disc', label, re.IGNORECASE):
        return DEFAULT_DESCRIPTOR
    return label


def derive_descriptors(header: DatHeader, total_games: int) -> Tuple[str, str]:
    """
    Pull the descriptor ("Datfile" in "Sony - PlayStation - Datfile (10852) (...)")
    out of the header description. Returns (original, normalized).
    """
    description = header.description or ''
    descriptor = (_match_system_descriptor(description, header.name, total_games)
                  or _match_generic_descriptor(description))
    normalized = normalize_descriptor_label(descriptor or DEFAULT_DESCRIPTOR)
    return descriptor or normalized, normalized


def _source_text(xml_input: Union[str, bytes]) -> Optional[str]:
    """The document decoded the way the XML parser read it; None if that fails."""
    if isinstance(xml_input, str):
        return xml_input

    if xml_input.startswith(codecs.BOM_UTF8):
        encoding = 'utf-8-sig'
    elif xml_input.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        encoding = 'utf-16'
    else:
        match = XML_ENCODING_PATTERN.match(xml_input)
        encoding = match.group(1).decode('ascii') if match else 'utf-8'

    try:
        return xml_input.decode(encoding)
    except (LookupError, UnicodeDecodeError):
        return None


def _game_source_blocks(text: Optional[str], expected: int) -> List[Optional[str]]:
    """
    Slice every "<game ...>...</game>" block out of the source text.

    Only used when the blocks line up one-to-one with the parsed <game>
    elements; otherwise every game is re-serialized from its element.
    """
    if text is not None:
        blocks = [m.group(0) for m in GAME_BLOCK_PATTERN.finditer(text) if m.group(0).startswith('<game')]
        if len(blocks) == expected:
            return blocks
    return [None] * expected


def parse_dat(xml_input: Union[str, bytes]) -> ParsedDat:
    """
    Parse a Logiqx/Redump XML datafile.

    Bytes are handed to the XML parser as-is so the document's own encoding
    declaration applies. Raises InvalidDatError for malformed XML, a missing
    <datafile> root, or a header without a name.
    """
    try:
        root = ET.fromstring(xml_input)
    except ET.ParseError as e:
        raise InvalidDatError(f"Invalid DAT: {e}") from e

    if root.tag != 'datafile':
        raise InvalidDatError('Invalid DAT: missing <datafile> root node.')

    header, header_extra_nodes = parse_header(root.find('header'))
    game_elems = root.findall('game')
    sources = _game_source_blocks(_source_text(xml_input), len(game_elems))
    games = [parse_game(game_elem, source) for game_elem, source in zip(game_elems, sources)]
    descriptor, normalized_descriptor = derive_descriptors(header, len(games))

    return ParsedDat(
        header=header,
        games=games,
        available_regions=collect_available_regions(games),
        descriptor=descriptor,
        normalized_descriptor=normalized_descriptor,
        version_label=header.version or header.date or None,
        root_attributes=dict(root.attrib),
        root_extras=[child for child in root if child.tag not in ('header', 'game')],
        header_extra_nodes=header_extra_nodes,
    )


# =============================================================================
# FILTERING & SERIALIZATION
# =============================================================================

def canonicalize_selection(selected_regions: Optional[List[str]]) -> List[str]:
    """Canonical labels for a user selection, in selection order, unknown names dropped."""
    selection = []
    for value in selected_regions or []:
        region = normalize_region_token(value)
        if region and region not in selection:
            selection.append(region)
    return selection


def select_games(games: List[DatGame], selection: List[str]) -> List[DatGame]:
    """Games sharing at least one region with the selection; all games if it is empty."""
    if not selection:
        return list(games)
    wanted = set(selection)
    return [game for game in games if wanted.intersection(game.regions)]


def create_region_label(selected_regions: List[str]) -> str:
    return ', '.join(selected_regions or [])


def describe_selection(selected_regions: List[str]) -> str:
    return create_region_label(selected_regions) or 'All regions'


def today_label() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def build_filtered_header(header: DatHeader, filtered_count: int, selected_regions: List[str],
                          descriptor: str, version_label: Optional[str] = None) -> DatHeader:
    region_label = create_region_label(selected_regions)
    version = version_label or header.version or header.date or today_label()
    name = f"{header.name} ({region_label})" if region_label else header.name
    description = f"{name} - {descriptor} ({filtered_count}) ({version})"
    return replace(header, name=name, description=description, extra=dict(header.extra))


def header_to_element(header: DatHeader, extra_nodes: Dict[str, ET.Element] = None) -> ET.Element:
    node = ET.Element('header')
    for tag in HEADER_FIELDS:
        value = getattr(header, tag)
        if value is not None:
            ET.SubElement(node, tag).text = value

    extra_nodes = extra_nodes or {}
    for tag, value in header.extra.items():
        if tag in extra_nodes:
            node.append(copy.deepcopy(extra_nodes[tag]))
        else:
            ET.SubElement(node, tag).text = value
    return node


def _game_text(game: DatGame) -> str:
    if game.source_text is not None:
        return game.source_text
    elem = copy.deepcopy(game.raw)
    elem.tail = None
    ET.indent(elem, space='\t', level=1)
    return ET.tostring(elem, encoding='unicode').replace(' />', '/>')


def build_filtered_xml(parsed: ParsedDat, header: DatHeader, games: List[DatGame]) -> str:
    """
    Serialize a datafile from the preserved root extras, a rebuilt header and
    the kept games' source text, untouched. Lines end with CRLF.
    """
    root = ET.Element('datafile', dict(parsed.root_attributes))
    for extra in parsed.root_extras:
        root.append(copy.deepcopy(extra))
    root.append(header_to_element(header, parsed.header_extra_nodes))

    ET.indent(root, space='\t')
    body = ET.tostring(root, encoding='unicode')
    # ElementTree writes "<rom ... />"; DAT tools write "<rom .../>"
    body = body.replace(' />', '/>')

    # Kept games go in after the header, before the closing tag
    head, closing, tail = body.rpartition('</datafile>')
    game_lines = ''.join(f"\t{_game_text(game)}\n" for game in games)
    body = head + game_lines + closing + tail

    xml = '\n'.join([XML_DECLARATION, DATAFILE_DOCTYPE, body]) + '\n'
    return re.sub(r'\r?\n', '\r\n', xml)


def filter_dat_by_regions(parsed: ParsedDat, selected_regions: Optional[List[str]],
                          base_filename: Optional[str] = None) -> FilteredDat:
    """
    Keep the games matching any of the selected regions and rebuild the DAT.

    An empty (or entirely unrecognized) selection keeps every game. Games with
    no detected region never match a non-empty selection. Raises
    NoMatchesError when nothing is left.
    """
    selection = canonicalize_selection(selected_regions)
    games = select_games(parsed.games, selection)
    if not games:
        raise NoMatchesError('No games match the selected region filters.')

    descriptor = parsed.descriptor or DEFAULT_DESCRIPTOR
    normalized_descriptor = parsed.normalized_descriptor or normalize_descriptor_label(descriptor)

    header = build_filtered_header(parsed.header, len(games), selection, descriptor, parsed.version_label)
    xml = build_filtered_xml(parsed, header, games)
    filename = derive_filtered_filename(base_filename, header.description, header.name,
                                        normalized_descriptor, len(games), parsed.version_label)

    summary = FilterSummary(
        initial_games=len(parsed.games),
        filtered_games=len(games),
        removed_games=len(parsed.games) - len(games),
        selected_regions=selection,
        region_label=create_region_label(selection),
        descriptor=descriptor,
        normalized_descriptor=normalized_descriptor,
        version_label=parsed.version_label,
    )
    return FilteredDat(xml=xml, filename=filename, header=header, games=games, summary=summary)


# =============================================================================
# FILENAMES
# =============================================================================

def sanitize_filename(text: str) -> str:
    text = re.sub(r'[<>:"/\\|?*]', ' ', text)
    return re.sub(r'\s+', ' ', text).strip()


def split_extension(filename: str) -> Tuple[str, str]:
    """('Name', '.ext'); files without an extension get '.dat'."""
    match = re.search(r'(\.[^.]+)$', filename)
    if match:
        return filename[:-len(match.group(1))], match.group(1)
    return filename, DEFAULT_EXTENSION


def derive_filtered_filename(base_filename: Optional[str], header_description: Optional[str],
                             decorated_name: str, normalized_descriptor: str,
                             filtered_count: int, version_label: Optional[str] = None) -> str:
    """
    Suggest a filename for the filtered DAT.

    1. Source named "<system> - <descriptor> (<count>) <rest>": rebuild it with
       the decorated name and the new count, keeping <rest>.
    2. Otherwise use the header description.
    3. Otherwise "<name> - <descriptor> (<count>) (<version>)".
    """
    extension = DEFAULT_EXTENSION

    if base_filename:
        stem, extension = split_extension(base_filename)
        match = FILENAME_PATTERN.match(stem) if stem else None
        if match:
            rest = match.group(4).strip()
            if rest:
                suffix = f" {rest}"
            elif version_label:
                suffix = f" ({version_label})"
            else:
                suffix = ''
            rebuilt = f"{decorated_name} - {normalized_descriptor} ({filtered_count}){suffix}"
            return f"{sanitize_filename(rebuilt)}{extension}"

    if header_description:
        return f"{sanitize_filename(header_description)}{extension}"

    version_segment = f" ({version_label})" if version_label else ''
    fallback = f"{decorated_name} - {normalized_descriptor} ({filtered_count}){version_segment}"
    return f"{sanitize_filename(fallback)}{extension}"


# =============================================================================
# FILE I/O
# =============================================================================

def read_dat_file(path: Path) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise DatIOError(f"Could not read {path}: {e.strerror or e}") from e


def write_dat_file(path: Path, xml: str):
    """Write via a temporary sibling file so a failed save leaves nothing behind."""
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
        with os.fdopen(fd, 'wb') as f:
            f.write(xml.encode('utf-8'))
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise DatIOError(f"Could not write {path}: {e.strerror or e}") from e


# =============================================================================
# SESSION
# =============================================================================

@dataclass
class LoadedDatState:
    source_path: Path
    original_filename: str
    parsed: ParsedDat


@dataclass
class LoadedDatSummary:
    file_path: str
    original_filename: str
    header: DatHeader
    regions: List[str]
    total_games: int
    descriptor: str
    normalized_descriptor: str
    version_label: Optional[str] = None


@dataclass
class PreviewResult:
    request_id: int
    header: DatHeader
    summary: FilterSummary
    filename: str


@dataclass
class SaveResult:
    canceled: bool = False
    saved_path: Optional[str] = None
    filename: Optional[str] = None
    header: Optional[DatHeader] = None
    summary: Optional[FilterSummary] = None


class DatSession:
    """
    Holds the one currently loaded DAT.

    A successful load replaces the current DAT; failed loads, previews and
    saves leave it alone. Previews are pure and may run concurrently; each
    carries a request id so callers can drop results that were overtaken.
    """

    def __init__(self, state_file: Optional[Union[str, Path]] = None):
        self.state_file = Path(state_file) if state_file else None
        self._state: Optional[LoadedDatState] = None
        self._state_lock = threading.Lock()
        self._io_lock = threading.Lock()
        self._request_ids = itertools.count(1)
        self._latest_request = 0

    # -- loading --------------------------------------------------------------

    def load_from_path(self, path: Union[str, Path]) -> LoadedDatSummary:
        if not path:
            raise DatIOError('No file path provided.')
        source = Path(path)

        with self._io_lock:
            parsed = parse_dat(read_dat_file(source))
            state = LoadedDatState(source_path=source, original_filename=source.name, parsed=parsed)
            with self._state_lock:
                self._state = state
            self._remember_path(source)

        return self._summarize(state)

    def open_and_parse(self, choose_path: Callable[[], Optional[Union[str, Path]]]) -> Optional[LoadedDatSummary]:
        """Load whatever path choose_path() returns; None means the user canceled."""
        path = choose_path()
        if not path:
            return None
        return self.load_from_path(path)

    def get_current(self) -> Optional[LoadedDatSummary]:
        state = self._state
        return self._summarize(state) if state else None

    def current_document(self) -> Optional[ParsedDat]:
        state = self._state
        return state.parsed if state else None

    # -- filtering ------------------------------------------------------------

    def next_request_id(self) -> int:
        with self._state_lock:
            request_id = next(self._request_ids)
            self._latest_request = request_id
        return request_id

    def is_latest(self, request_id: int) -> bool:
        return request_id == self._latest_request

    def preview_filter(self, regions: Optional[List[str]], request_id: Optional[int] = None) -> PreviewResult:
        if request_id is None:
            request_id = self.next_request_id()
        state = self._require_state()
        result = self._run_filter(state, regions)
        return PreviewResult(request_id=request_id, header=result.header,
                             summary=result.summary, filename=result.filename)

    def suggested_path(self, filename: str, dest_dir: Optional[Union[str, Path]] = None) -> Path:
        state = self._require_state()
        directory = Path(dest_dir) if dest_dir else state.source_path.parent
        return directory / filename

    def save_filtered(self, regions: Optional[List[str]], target_path: Optional[Union[str, Path]] = None,
                      choose_target: Optional[Callable[[Path], Optional[Union[str, Path]]]] = None,
                      dest_dir: Optional[Union[str, Path]] = None) -> SaveResult:
        """
        Filter the current DAT and write it out.

        Without target_path the file goes next to the source DAT (or into
        dest_dir) under the suggested filename; choose_target, if given, is
        offered that path first and may return another one or None to cancel.
        """
        state = self._require_state()
        result = self._run_filter(state, regions)

        final_path = target_path
        if not final_path:
            suggested = self.suggested_path(result.filename, dest_dir)
            final_path = choose_target(suggested) if choose_target else suggested
            if not final_path:
                return SaveResult(canceled=True)

        final_path = Path(final_path)
        with self._io_lock:
            write_dat_file(final_path, result.xml)

        return SaveResult(saved_path=str(final_path), filename=final_path.name,
                          header=result.header, summary=result.summary)

    # -- last opened file -----------------------------------------------------

    def last_opened_path(self) -> Optional[Path]:
        if not self.state_file or not self.state_file.exists():
            return None
        try:
            with open(self.state_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            print(f"Warning: Could not read {self.state_file.name}: {e}")
            return None
        last = data.get('last_opened') if isinstance(data, dict) else None
        return Path(last) if last else None

    def _remember_path(self, path: Path):
        if not self.state_file:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_file, 'w', encoding='utf-8') as f:
                json.dump({'last_opened': str(path.resolve())}, f, indent=2)
        except OSError as e:
            print(f"Warning: Could not record last opened file: {e}")

    # -- helpers --------------------------------------------------------------

    def _require_state(self) -> LoadedDatState:
        state = self._state
        if state is None:
            raise NoDatLoadedError('No DAT file loaded.')
        return state

    @staticmethod
    def _run_filter(state: LoadedDatState, regions: Optional[List[str]]) -> FilteredDat:
        return filter_dat_by_regions(state.parsed, regions or [], state.original_filename)

    @staticmethod
    def _summarize(state: LoadedDatState) -> LoadedDatSummary:
        parsed = state.parsed
        return LoadedDatSummary(
            file_path=str(state.source_path),
            original_filename=state.original_filename,
            header=parsed.header,
            regions=list(parsed.available_regions),
            total_games=len(parsed.games),
            descriptor=parsed.descriptor,
            normalized_descriptor=parsed.normalized_descriptor,
            version_label=parsed.version_label,
        )


# =============================================================================
# CONFIG FILE
# =============================================================================

CONFIG_FILENAME = 'dat-region-filter.yaml'
DEFAULT_STATE_FILE = Path.home() / '.dat-region-filter.json'

DEFAULT_CONFIG_CONTENT = """# =============================================================================
# DAT Region Filter Configuration File
# =============================================================================
# Place this file next to your DAT files or specify with --config
# CLI arguments override these settings
# =============================================================================

# Regions to keep (default: USA and World when the DAT has them)
# Loose names work too: US, PAL, UK, ...
# regions:
#   - USA
#   - World
#   - Europe

# Directory for filtered DATs (default: next to the source DAT)
# dest: /path/to/filtered

# Write the filtered DAT instead of only previewing it
# commit: false

# List every kept game
# verbose: false

# Where the last opened DAT is remembered (for --last)
# state_file: ~/.dat-region-filter.json
"""


def _strip_yaml_comment(line: str) -> str:
    """Drop a trailing '# comment' that is not inside quotes."""
    quote = None
    for i, char in enumerate(line):
        if char in ('"', "'"):
            if quote is None:
                quote = char
            elif char == quote:
                quote = None
        elif char == '#' and quote is None:
            return line[:i]
    return line


def _parse_yaml_value(value: str):
    """Parse a scalar (or a one-line [a, b] list) into a Python value."""
    if not value:
        return None

    if value.startswith('[') and value.endswith(']'):
        return [_parse_yaml_value(item.strip()) for item in value[1:-1].split(',') if item.strip()]

    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]

    lowered = value.lower()
    if lowered in ('true', 'yes', 'on'):
        return True
    if lowered in ('false', 'no', 'off'):
        return False
    if lowered in ('null', '~'):
        return None

    try:
        return float(value) if '.' in value else int(value)
    except ValueError:
        return value


def parse_simple_yaml(content: str) -> dict:
    """
    Parse the YAML subset config files use: "key: value" pairs, "- item"
    lists under a bare "key:", and comments. No nesting, anchors or
    multi-line strings.
    """
    result = {}
    list_key = None

    for raw_line in content.splitlines():
        stripped = _strip_yaml_comment(raw_line).strip()
        if not stripped:
            continue

        if stripped == '-' or stripped.startswith('- '):
            if list_key is not None:
                result[list_key].append(_parse_yaml_value(stripped[1:].strip()))
            continue

        if ':' not in stripped:
            continue
        key, _, value = stripped.partition(':')
        key = key.strip()
        value = value.strip()
        if not key:
            continue

        if value:
            result[key] = _parse_yaml_value(value)
            list_key = None
        else:
            # Bare key opens a list
            result[key] = []
            list_key = key

    return result


def generate_default_config(config_path: Path) -> bool:
    """Write the commented default config; False if it could not be written."""
    try:
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write(DEFAULT_CONFIG_CONTENT)
        return True
    except OSError as e:
        print(f"Warning: Could not create config file: {e}")
        return False


def load_config(config_path: Path) -> dict:
    """Load a YAML-subset or JSON config file; {} if missing or unreadable."""
    config_path = Path(config_path)
    if not config_path.exists():
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            content = f.read()
    except OSError as e:
        print(f"Warning: Could not read {config_path.name}: {e}")
        return {}

    if config_path.suffix.lower() == '.json' or content.lstrip().startswith('{'):
        try:
            config = json.loads(content) or {}
        except json.JSONDecodeError as e:
            print(f"Warning: Failed to parse {config_path.name}: {e}")
            return {}
    else:
        config = parse_simple_yaml(content)

    if not isinstance(config, dict):
        print(f"Warning: Ignoring {config_path.name}: expected key/value settings")
        return {}
    return config


def apply_config_to_args(args, config: dict):
    """Fill args from config settings the command line left unset."""
    config_map = {
        'regions': 'region',
        'dest': 'dest',
        'output': 'output',
        'commit': 'commit',
        'verbose': 'verbose',
        'state_file': 'state_file',
    }

    for config_key, arg_name in config_map.items():
        if config_key not in config:
            continue
        current_value = getattr(args, arg_name, None)
        if current_value is None or current_value is False or current_value == []:
            value = config[config_key]
            if arg_name == 'region' and isinstance(value, str):
                value = [value]
            setattr(args, arg_name, value)


# =============================================================================
# COMMAND LINE
# =============================================================================

def split_region_args(values: Optional[List[str]]) -> List[str]:
    """Flatten repeated/comma-separated region arguments: ['USA,World', 'Japan']."""
    regions = []
    for value in values or []:
        if value is None:
            continue
        regions.extend(part.strip() for part in str(value).split(',') if part.strip())
    return regions


def _prompt(message: str) -> Optional[str]:
    try:
        return input(message).strip().strip('"')
    except EOFError:
        return None


def prompt_for_dat_path() -> Optional[str]:
    return _prompt("DAT file to open (blank to cancel): ") or None


def prompt_for_regions(available: List[str], defaults: List[str]) -> List[str]:
    print(f"Available regions: {', '.join(available)}")
    value = _prompt(f"Regions to keep [{describe_selection(defaults)}]: ")
    if not value:
        return list(defaults)
    if value.lower() == 'all':
        return []
    return split_region_args([value])


def prompt_for_save_path(suggested: Path) -> Optional[Path]:
    value = _prompt(f"Save as [{suggested}] (n to cancel): ")
    if value is None or value.lower() in ('n', 'no'):
        return None
    return Path(value).expanduser() if value else suggested


def print_dat_summary(summary: LoadedDatSummary):
    print("=" * 60)
    print(f"DAT: {summary.original_filename}")
    print("=" * 60)
    print(f"  Name:        {summary.header.name}")
    if summary.header.description:
        print(f"  Description: {summary.header.description}")
    print(f"  Descriptor:  {summary.descriptor} -> {summary.normalized_descriptor}")
    print(f"  Version:     {summary.version_label or '(none)'}")
    print(f"  Games:       {summary.total_games:,}")
    print(f"  Regions:     {', '.join(summary.regions) or '(none)'}")


def print_region_census(parsed: ParsedDat, verbose: bool = False):
    print()
    print("REGIONS")
    print("-" * 60)
    for region, count in count_regions(parsed).items():
        print(f"  {region:<20} {count:>7,}")

    if verbose:
        unknown = [game for game in parsed.games if not game.regions]
        if unknown:
            print()
            print(f"No region detected ({len(unknown)}):")
            for game in unknown:
                print(f"  ? {game.name}")


def print_filter_preview(preview: PreviewResult):
    summary = preview.summary
    print()
    print("FILTERED DAT")
    print("-" * 60)
    print(f"  Selection:   {describe_selection(summary.selected_regions)}")
    print(f"  Name:        {preview.header.name}")
    print(f"  Description: {preview.header.description}")
    print(f"  Filename:    {preview.filename}")
    print(f"  Games:       {summary.filtered_games:,} kept, {summary.removed_games:,} removed "
          f"(of {summary.initial_games:,})")


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        description='DAT Region Filter - keep only the regions you collect from a Redump DAT',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s "Sony - PlayStation - Datfile (10852) (2025-01-01).dat"    # Preview USA + World
  %(prog)s my.dat -r USA -r Europe --commit      # Write a USA + Europe DAT
  %(prog)s my.dat -r "US, PAL" --commit          # Loose names are normalized
  %(prog)s my.dat --all-regions --commit         # Rewrite without filtering
  %(prog)s my.dat --list-regions -v              # Region counts and untagged games
  %(prog)s --last -i                             # Reopen the last DAT interactively
        """
    )
    parser.add_argument('dat', nargs='?', default=None,
                        help='DAT file to filter')
    parser.add_argument('--region', '-r', action='append', default=None,
                        help='Region to keep (repeatable or comma-separated; default: USA, World)')
    parser.add_argument('--all-regions', action='store_true',
                        help='Keep every game (no region filter)')
    parser.add_argument('--dest', '-d', default=None,
                        help='Directory for the filtered DAT (default: next to the source)')
    parser.add_argument('--output', '-o', default=None,
                        help='Exact output file path (overrides --dest and the suggested name)')
    parser.add_argument('--commit', '-c', action='store_true',
                        help='Write the filtered DAT (default is a dry run that only previews it)')
    parser.add_argument('--list-regions', action='store_true',
                        help='Show the regions found in the DAT and exit')
    parser.add_argument('--interactive', '-i', action='store_true',
                        help='Prompt for the DAT, regions and output path')
    parser.add_argument('--last', action='store_true',
                        help='Open the most recently loaded DAT')
    parser.add_argument('--config', default=None,
                        help=f'Path to config file (default: {CONFIG_FILENAME} next to the DAT)')
    parser.add_argument('--init-config', default=None, metavar='PATH',
                        help='Write a default config file to PATH and exit')
    parser.add_argument('--state-file', default=None,
                        help='Where to remember the last opened DAT (default: ~/.dat-region-filter.json)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='List kept games and untagged games')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.init_config:
        config_path = Path(args.init_config)
        if generate_default_config(config_path):
            print(f"Created config file: {config_path}")
            return 0
        return 1

    if args.config:
        config_path = Path(args.config)
    elif args.dat:
        config_path = Path(args.dat).parent / CONFIG_FILENAME
    else:
        config_path = None
    if config_path is not None:
        apply_config_to_args(args, load_config(config_path))

    session = DatSession(state_file=Path(args.state_file).expanduser() if args.state_file
                         else DEFAULT_STATE_FILE)

    try:
        dat_path = args.dat
        if not dat_path and args.last:
            dat_path = session.last_opened_path()
            if not dat_path:
                print("Error: No previously opened DAT recorded")
                return 1

        if dat_path:
            loaded = session.load_from_path(dat_path)
        elif args.interactive:
            loaded = session.open_and_parse(prompt_for_dat_path)
            if loaded is None:
                print("Canceled.")
                return 0
        else:
            print("Error: No DAT file given (pass a path, --last or --interactive)")
            return 1

        print_dat_summary(loaded)
        parsed = session.current_document()

        if args.list_regions:
            print_region_census(parsed, verbose=args.verbose)
            return 0

        defaults = pick_default_regions(loaded.regions)
        if args.all_regions:
            regions = []
        elif args.region:
            regions = split_region_args(args.region)
        elif args.interactive:
            regions = prompt_for_regions(loaded.regions, defaults)
        else:
            regions = defaults

        unrecognized = [region for region in regions if normalize_region_token(region) is None]
        if unrecognized:
            print(f"Warning: Ignoring unrecognized region(s): {', '.join(unrecognized)}")

        preview = session.preview_filter(regions)
        print_filter_preview(preview)

        if args.verbose:
            print()
            for game in select_games(parsed.games, preview.summary.selected_regions):
                print(f"  + {game.name} [{', '.join(game.regions)}]")

        if not args.commit and not args.interactive:
            print("\n*** DRY RUN - No file written ***")
            print("*** Use --commit to write the filtered DAT ***")
            return 0

        chooser = prompt_for_save_path if args.interactive else None
        result = session.save_filtered(regions, target_path=args.output,
                                       choose_target=chooser, dest_dir=args.dest)
        if result.canceled:
            print("Canceled.")
            return 0

        print(f"\nSaved: {result.saved_path}")
        return 0

    except NoMatchesError as e:
        print(f"Warning: {e}")
        return 1
    except DatError as e:
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
