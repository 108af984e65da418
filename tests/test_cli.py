"""Tests for the command line."""

import json

import pytest
from click.testing import CliRunner

from calsync_reconcile.cli import cli
from calsync_reconcile.models import Side


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return CliRunner(env={
        'DATA_DIR': str(tmp_path / 'data'),
        'LEFT_CALENDAR_ID': 'left-cal',
        'RIGHT_CALENDAR_ID': 'right-cal',
        'SYNC_PAST_DAYS': '3650',
    })


def write_snapshot(path, events):
    path.write_text(json.dumps([json.loads(e.model_dump_json()) for e in events]))
    return str(path)


def test_config_create(runner, tmp_path):
    result = runner.invoke(cli, ['config', 'create', '--path', str(tmp_path / 'example.env')])

    assert result.exit_code == 0
    assert 'SYNC_POLICY__DIRECTION=right_to_left' in (tmp_path / 'example.env').read_text()


def test_sync_writes_snapshots(runner, tmp_path, make_event):
    left = write_snapshot(tmp_path / 'left.json', [])
    right = write_snapshot(tmp_path / 'right.json', [make_event('r0', side=Side.RIGHT, summary='Dentist')])

    result = runner.invoke(cli, ['sync', left, right])

    assert result.exit_code == 0, result.output
    (copy,) = json.loads((tmp_path / 'left.json').read_text())
    assert copy['summary'] == 'Dentist'


def test_dry_run_leaves_snapshots_alone(runner, tmp_path, make_event):
    left = write_snapshot(tmp_path / 'left.json', [])
    right = write_snapshot(tmp_path / 'right.json', [make_event('r0', side=Side.RIGHT)])

    result = runner.invoke(cli, ['sync', '--dry-run', left, right])

    assert result.exit_code == 0, result.output
    assert 'Would create' in result.output
    assert json.loads((tmp_path / 'left.json').read_text()) == []


def test_preview_shows_matches_without_writing(runner, tmp_path, make_event):
    left = write_snapshot(tmp_path / 'left.json', [make_event('l0', summary='Lunch')])
    right = write_snapshot(tmp_path / 'right.json', [make_event('r0', side=Side.RIGHT, summary='Lunch')])

    result = runner.invoke(cli, ['preview', left, right])

    assert result.exit_code == 0, result.output
    assert 'Reclaimed' in result.output
    (item,) = json.loads((tmp_path / 'left.json').read_text())
    assert item['extended_properties'] == {}


def test_history_lists_runs(runner, tmp_path, make_event):
    left = write_snapshot(tmp_path / 'left.json', [])
    right = write_snapshot(tmp_path / 'right.json', [make_event('r0', side=Side.RIGHT)])
    runner.invoke(cli, ['sync', left, right])

    result = runner.invoke(cli, ['history'])

    assert result.exit_code == 0
    assert 'completed' in result.output
