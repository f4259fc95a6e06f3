"""Tests for CLI module."""

import json
import logging
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from cli import main
from conftest import WEB_STACK, widget_chain
from errors import (
    GraphCycleError,
    ProvisioningError,
    RollbackFailureError,
    StackLockedError,
    StalePlanError,
)
from stack_opr import cli as stack_cli


@pytest.fixture(autouse=True)
def driver_env(monkeypatch, tmp_path):
    """Point the CLI at a temporary state dir with fast polling."""
    monkeypatch.delenv('STACK_DRIVER_CONFIG', raising=False)
    monkeypatch.setenv('STACK_DRIVER_STATE_DIR', str(tmp_path / 'states'))
    monkeypatch.setenv('STACK_DRIVER_POLL_INTERVAL', '0.01')
    root_logger = logging.getLogger()
    handlers, level = root_logger.handlers[:], root_logger.level
    with patch('config.get_base_dir', return_value=tmp_path):
        yield tmp_path / 'states'
    # --json-output swaps the root handlers
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


@pytest.fixture
def template_file(tmp_path):
    path = tmp_path / 'web.yaml'
    path.write_text(yaml.safe_dump(WEB_STACK, sort_keys=False))
    return str(path)


def _json(capsys):
    return json.loads(capsys.readouterr().out)


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: stack-driver <verb>' in out
        assert 'unlock' in out

    def test_version(self, capsys):
        assert main(['--version']) == 0
        assert capsys.readouterr().out.startswith('stack-driver ')

    def test_unknown_verb(self, capsys):
        assert main(['deploy']) == 1
        assert "Unknown command 'deploy'" in capsys.readouterr().out


class TestValidate:
    """Tests for the validate verb."""

    def test_valid(self, template_file, capsys):
        assert main(['validate', '-t', template_file]) == 0
        assert "Template 'web' is valid (3 resources)" in capsys.readouterr().out

    def test_json(self, template_file, capsys):
        assert main(['validate', '-t', template_file, '--json-output']) == 0
        data = _json(capsys)
        assert data['success'] is True
        assert data['resources'] == ['Network', 'Database', 'Service']
        assert data['max_depth'] == 2

    def test_inline_json_cycle(self, capsys):
        template = json.dumps({'resources': {
            'A': {'kind': 'network', 'properties': {'cidr': {'ref': 'B'}}},
            'B': {'kind': 'network', 'properties': {'cidr': {'ref': 'A'}}},
        }})
        assert main(['validate', '--template-json', template, '--json-output']) == stack_cli.EXIT_STRUCTURAL
        data = _json(capsys)
        assert data['success'] is False
        assert 'E102' in data['error']

    def test_no_template(self, capsys):
        assert main(['validate']) == stack_cli.EXIT_STRUCTURAL
        assert 'No template source given' in capsys.readouterr().err

    def test_bad_param(self, template_file, capsys):
        assert main(['validate', '-t', template_file, '-p', 'Env']) == stack_cli.EXIT_STRUCTURAL
        assert 'Expected key=value' in capsys.readouterr().err


class TestPlanApply:
    """Tests for plan, apply and show."""

    def test_plan_is_read_only(self, template_file, driver_env, capsys):
        assert main(['plan', '-t', template_file, '-s', 'web']) == 0
        out = capsys.readouterr().out
        assert 'PLAN: web (state version 0)' in out
        assert '3 to create, 0 to update, 0 to replace, 0 to delete' in out
        assert not (driver_env / 'web' / 'state.json').exists()

    def test_plan_json(self, template_file, capsys):
        assert main(['plan', '-t', template_file, '-s', 'web', '-p', 'Env=prod', '--json-output']) == 0
        data = _json(capsys)
        assert [c['action'] for c in data['changes']] == ['create'] * 3
        assert data['parameters']['Env'] == 'prod'

    def test_apply_then_show(self, template_file, capsys):
        assert main(['apply', '-t', template_file, '-s', 'web']) == 0
        out = capsys.readouterr().out
        assert 'Apply complete: 3 change(s)' in out
        assert 'ServiceUrl = https://service-0003.svc.internal' in out

        assert main(['show', '-s', 'web', '--json-output']) == 0
        state = _json(capsys)
        assert sorted(state['resources']) == ['Database', 'Network', 'Service']
        assert state['status'] == 'ok'

    def test_second_apply_is_noop(self, template_file, capsys):
        assert main(['apply', '-t', template_file, '-s', 'web']) == 0
        capsys.readouterr()
        assert main(['apply', '-t', template_file, '-s', 'web', '--json-output']) == 0
        data = _json(capsys)
        assert all(c['skipped'] for c in data['changes'])

    def test_apply_dry_run(self, template_file, driver_env, capsys):
        assert main(['apply', '-t', template_file, '-s', 'web', '--dry-run']) == 0
        assert 'DRY-RUN APPLY' in capsys.readouterr().out
        assert not (driver_env / 'web' / 'state.json').exists()

    def test_show_empty(self, capsys):
        assert main(['show', '-s', 'ghost']) == 0
        assert 'No recorded resources' in capsys.readouterr().out

    def test_show_reports_lock(self, template_file, driver_env, capsys):
        assert main(['apply', '-t', template_file, '-s', 'web']) == 0
        capsys.readouterr()
        (driver_env / 'web' / 'apply.lock').write_text('1\n')

        assert main(['show', '-s', 'web']) == 0
        assert "status ok) [locked]" in capsys.readouterr().out
        assert main(['show', '-s', 'web', '--json-output']) == 0
        assert _json(capsys)['locked'] is True

    def test_locked_stack(self, template_file, driver_env, capsys):
        lock_file = driver_env / 'web' / 'apply.lock'
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text('1\n')
        assert main(['apply', '-t', template_file, '-s', 'web']) == stack_cli.EXIT_BLOCKED
        assert 'E303' in capsys.readouterr().err

        assert main(['unlock', '-s', 'web']) == 0
        assert "Stack 'web' unlocked" in capsys.readouterr().out
        assert main(['apply', '-t', template_file, '-s', 'web']) == 0


class TestFailures:
    """Tests for provisioning failures surfaced by apply."""

    def test_provisioning_failure_rolled_back(self, orchestrator, backend, capsys):
        backend.inject_failure('create', kind='widget', match={'name': 'c'}, message='no capacity')
        with patch('stack_opr.cli.StackOrchestrator.from_config', return_value=orchestrator), \
                patch('stack_opr.cli.load_template', return_value=widget_chain('A', 'B', 'C')):
            rc = main(['apply', '-t', 'chain.yaml', '-s', 'chain', '--json-output'])

        assert rc == stack_cli.EXIT_PROVISIONING
        data = _json(capsys)
        assert 'no capacity' in data['error']
        assert data['rollback']['compensated'] == [
            {'logicalId': 'B', 'action': 'delete'},
            {'logicalId': 'A', 'action': 'delete'},
        ]

    def test_rollback_failure(self, orchestrator, backend, capsys):
        backend.inject_failure('create', kind='widget', match={'name': 'c'}, message='no capacity')
        backend.inject_failure('delete', kind='widget', match={'name': 'b'}, message='in use')
        with patch('stack_opr.cli.StackOrchestrator.from_config', return_value=orchestrator), \
                patch('stack_opr.cli.load_template', return_value=widget_chain('A', 'B', 'C')):
            rc = main(['apply', '-t', 'chain.yaml', '-s', 'chain'])

        assert rc == stack_cli.EXIT_ROLLBACK_FAILED
        err = capsys.readouterr().err
        assert 'Rollback failed for B' in err
        assert 'Original failure' in err


class TestDestroy:
    """Tests for the destroy verb."""

    def test_destroy_with_yes(self, template_file, capsys):
        assert main(['apply', '-t', template_file, '-s', 'web']) == 0
        assert main(['destroy', '-s', 'web', '--yes']) == 0
        assert 'Destroy complete: 3 change(s)' in capsys.readouterr().out

        assert main(['show', '-s', 'web', '--json-output']) == 0
        assert _json(capsys)['resources'] == {}

    def test_destroy_aborted(self, template_file, capsys):
        assert main(['apply', '-t', template_file, '-s', 'web']) == 0
        with patch('builtins.input', return_value='n'):
            assert main(['destroy', '-s', 'web']) == stack_cli.EXIT_ABORTED
        assert 'Aborted.' in capsys.readouterr().out

    def test_destroy_dry_run(self, template_file, capsys):
        assert main(['apply', '-t', template_file, '-s', 'web']) == 0
        capsys.readouterr()
        assert main(['destroy', '-s', 'web', '--dry-run']) == 0
        out = capsys.readouterr().out
        assert 'DRY-RUN DESTROY' in out
        assert '0 to create, 0 to update, 0 to replace, 3 to delete' in out


class TestExitCode:
    """Tests for error to exit code mapping."""

    @pytest.mark.parametrize('error,expected', [
        (GraphCycleError(['A', 'B', 'A']), stack_cli.EXIT_STRUCTURAL),
        (ValueError('bad'), stack_cli.EXIT_STRUCTURAL),
        (ProvisioningError('boom'), stack_cli.EXIT_PROVISIONING),
        (RollbackFailureError(['A'], 'boom'), stack_cli.EXIT_ROLLBACK_FAILED),
        (StackLockedError('web'), stack_cli.EXIT_BLOCKED),
        (StalePlanError('web', 1, 2), stack_cli.EXIT_BLOCKED),
    ])
    def test_mapping(self, error, expected):
        assert stack_cli._exit_code(error) == expected
