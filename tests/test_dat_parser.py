#!/usr/bin/env python3
"""
Tests for DAT parsing.

Run: pytest tests/test_dat_parser.py -v

Covers:
  - Header field mapping and unrecognized fields
  - Single-game / single-rom documents
  - Invalid documents
  - Region vocabulary aggregation
  - Descriptor and version label derivation
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from dat_region_filter import (
    DatHeader,
    InvalidDatError,
    derive_descriptors,
    normalize_descriptor_label,
    parse_dat,
)
from dat_builders import game_xml, make_dat


# ─── Header ────────────────────────────────────────────────────────────────

def test_header_fields_mapped():
    parsed = parse_dat(make_dat(['Game A (USA)'], name='Sega - Saturn', version='2025-02-03 04-05-06'))
    header = parsed.header
    assert header.name == 'Sega - Saturn'
    assert header.description == 'Sega - Saturn - Datfile (1) (2025-02-03 04-05-06)'
    assert header.version == '2025-02-03 04-05-06'
    assert header.author == 'redump.org'
    assert header.homepage == 'redump.org'
    assert header.url == 'http://redump.org/'
    assert header.extra == {}


def test_unrecognized_header_fields_kept_as_extra():
    extra = '\t\t<comment>  Internal build  </comment>\n\t\t<clrmamepro forcenodump="required"/>'
    parsed = parse_dat(make_dat(['Game (USA)'], header_extra=extra))
    assert parsed.header.extra == {'comment': 'Internal build', 'clrmamepro': ''}
    assert parsed.header_extra_nodes['clrmamepro'].get('forcenodump') == 'required'


def test_missing_optional_header_fields_are_none():
    xml = '<datafile><header><name>Test</name></header></datafile>'
    parsed = parse_dat(xml)
    assert parsed.header.description is None
    assert parsed.header.version is None
    assert parsed.version_label is None
    assert parsed.games == []


def test_empty_header_field_reads_as_empty_string():
    xml = '<datafile><header><name>Test</name><author/></header></datafile>'
    assert parse_dat(xml).header.author == ''


def test_version_label_falls_back_to_date():
    parsed = parse_dat(make_dat(['Game (USA)'], version=None, date='2024-12-31'))
    assert parsed.version_label == '2024-12-31'


def test_bytes_input_with_encoding_declaration():
    xml = make_dat(['Pokémon Stadium (Europe)']).replace(
        '<?xml version="1.0"?>', '<?xml version="1.0" encoding="UTF-8"?>')
    parsed = parse_dat(xml.encode('utf-8'))
    assert parsed.games[0].name == 'Pokémon Stadium (Europe)'


# ─── Games ─────────────────────────────────────────────────────────────────

def test_single_game_still_a_list():
    parsed = parse_dat(make_dat(['Only Game (Japan)']))
    assert len(parsed.games) == 1
    game = parsed.games[0]
    assert game.name == 'Only Game (Japan)'
    assert game.description == 'Only Game (Japan)'
    assert game.category == 'Games'
    assert len(game.roms) == 1
    assert game.roms[0].attributes['name'] == 'Only Game (Japan).iso'
    assert game.roms[0].attributes['size'] == '1048576'
    assert game.regions == ['Japan']


def test_games_keep_source_order():
    names = ['Zeta (USA)', 'Alpha (Europe)', 'Mid (Japan)']
    parsed = parse_dat(make_dat(names))
    assert [g.name for g in parsed.games] == names


def test_multiple_roms_in_order():
    xml = ('<datafile><header><name>X</name></header>'
           '<game name="Multi (USA)"><description>Multi (USA)</description>'
           '<rom name="Multi (USA) (Track 1).bin" size="10"/>'
           '<rom name="Multi (USA) (Track 2).bin" size="20"/>'
           '<rom name="Multi (USA).cue" size="30"/></game></datafile>')
    game = parse_dat(xml).games[0]
    assert [r.attributes['size'] for r in game.roms] == ['10', '20', '30']


def test_game_name_from_child_element():
    xml = ('<datafile><header><name>X</name></header>'
           '<game><name>Child Name (Korea)</name></game></datafile>')
    game = parse_dat(xml).games[0]
    assert game.name == 'Child Name (Korea)'
    assert game.regions == ['Korea']
    assert game.roms == []


def test_raw_element_retained():
    parsed = parse_dat(make_dat(['Game (USA)']))
    assert parsed.games[0].raw.tag == 'game'
    assert parsed.games[0].raw.get('name') == 'Game (USA)'


def test_region_from_rom_name_fallback():
    block = game_xml('Mystery Title', description='Mystery Title', rom_name='Mystery Title (Spain).iso')
    parsed = parse_dat(make_dat([block]))
    assert parsed.games[0].regions == ['Spain']


# ─── Invalid documents ─────────────────────────────────────────────────────

def test_missing_root_rejected():
    with pytest.raises(InvalidDatError, match='missing <datafile> root'):
        parse_dat('<catalog><header><name>X</name></header></catalog>')


def test_missing_header_name_rejected():
    with pytest.raises(InvalidDatError, match='missing <name>'):
        parse_dat('<datafile><header><description>X</description></header></datafile>')


def test_missing_header_rejected():
    with pytest.raises(InvalidDatError, match='missing <name>'):
        parse_dat('<datafile><game name="A (USA)"/></datafile>')


def test_malformed_xml_rejected():
    with pytest.raises(InvalidDatError):
        parse_dat('<datafile><header><name>X</name></header>')
    with pytest.raises(InvalidDatError):
        parse_dat('')


# ─── Region vocabulary ─────────────────────────────────────────────────────

def test_available_regions_sorted_and_distinct():
    parsed = parse_dat(make_dat(['A (USA)', 'B (Japan)', 'C (USA, Europe)', 'D (PAL)']))
    assert parsed.available_regions == ['Europe', 'Japan', 'USA']


def test_unknown_added_only_for_untagged_games():
    parsed = parse_dat(make_dat(['A (USA)', 'Some Game (Unknown Country)']))
    assert parsed.available_regions == ['Unknown', 'USA']
    assert parsed.games[1].regions == []

    parsed = parse_dat(make_dat(['A (USA)', 'B (World)']))
    assert 'Unknown' not in parsed.available_regions


def test_available_regions_sorted_ignoring_case():
    parsed = parse_dat(make_dat(['A (USA)', 'B (UK)', 'Some Game (Unknown Country)']))
    assert parsed.available_regions == ['United Kingdom', 'Unknown', 'USA']


# ─── Descriptors ───────────────────────────────────────────────────────────

def test_descriptor_from_system_prefix():
    header = DatHeader(name='Microsoft - Xbox',
                       description='Microsoft - Xbox - Datfile (2665) (2025-11-07 05-38-55)')
    assert derive_descriptors(header, 2665) == ('Datfile', 'Datfile')


def test_descriptor_needs_matching_count_for_system_pattern():
    header = DatHeader(name='Sony - PlayStation 2',
                       description='Sony - PlayStation 2 - Discs (12) (2025-01-01)')
    # Count mismatch falls back to the generic pattern, which still finds "Discs"
    original, normalized = derive_descriptors(header, 99)
    assert original == 'Discs'
    assert normalized == 'Datfile'


def test_descriptor_generic_pattern_keeps_custom_label():
    header = DatHeader(name='Arcade', description='Something - BIOS Images (42)')
    assert derive_descriptors(header, 7) == ('BIOS Images', 'BIOS Images')


def test_descriptor_datfile_word_fallback():
    header = DatHeader(name='X', description='Official datfile for X')
    assert derive_descriptors(header, 1) == ('Datfile', 'Datfile')


def test_descriptor_ultimate_fallback():
    assert derive_descriptors(DatHeader(name='X'), 0) == ('Datfile', 'Datfile')
    assert derive_descriptors(DatHeader(name='X', description='Nothing useful'), 0) == ('Datfile', 'Datfile')


def test_descriptor_normalization():
    assert normalize_descriptor_label('Datfile') == 'Datfile'
    assert normalize_descriptor_label('DATFILE v2') == 'Datfile'
    assert normalize_descriptor_label('Disc Images') == 'Datfile'
    assert normalize_descriptor_label('BIOS Images') == 'BIOS Images'


def test_parsed_document_carries_descriptors():
    parsed = parse_dat(make_dat(['A (USA)', 'B (Japan)'], name='Sega - Dreamcast'))
    assert parsed.descriptor == 'Datfile'
    assert parsed.normalized_descriptor == 'Datfile'
