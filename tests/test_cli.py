"""Tests for the CLI entry point and engine verb handlers.

Runs the verbs end to end against local (file-backed) providers in a
temporary directory.
"""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from cli import main
from engine.errors import FatalProviderError
from providers.local import LocalProvider


def _strata(config_dir, verb, *args):
    """Run a verb with the test config and document."""
    argv = [verb, '--config', str(config_dir / 'strata.yaml')]
    if verb not in ('refresh', 'state'):
        argv += ['-f', str(config_dir / 'stack.yaml')]
    return main(argv + list(args))


def _state(config_dir):
    path = config_dir / '.states' / 'ci' / 'state.json'
    return json.loads(path.read_text())['resources'] if path.exists() else {}


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert main([]) == 1
        assert 'Usage: strata <verb>' in capsys.readouterr().out

    def test_help(self, capsys):
        assert main(['--help']) == 0
        out = capsys.readouterr().out
        for verb in ('validate', 'plan', 'apply', 'destroy', 'refresh', 'state', 'output'):
            assert verb in out

    def test_unknown_verb(self, capsys):
        assert main(['launch']) == 2
        assert "Unknown verb 'launch'" in capsys.readouterr().err

    @patch('cli.subprocess.run')
    def test_version(self, mock_run, capsys):
        mock_run.return_value.returncode = 0
        mock_run.return_value.stdout = 'v0.3.0\n'
        assert main(['--version']) == 0
        assert capsys.readouterr().out.strip() == 'strata v0.3.0'


class TestValidateVerb:
    """Tests for 'strata validate'."""

    def test_valid(self, config_dir, capsys):
        assert _strata(config_dir, 'validate') == 0
        assert "'web-stack' is valid (3 resources)" in capsys.readouterr().out

    def test_json(self, config_dir, capsys):
        assert _strata(config_dir, 'validate', '--json-output') == 0
        data = json.loads(capsys.readouterr().out)
        assert data['success'] is True
        assert data['resources'] == ['aws.vm.web', 'aws.storage.logs', 'aws.database.main']

    def test_cycle(self, config_dir, capsys):
        (config_dir / 'stack.yaml').write_text("""
resources:
  - {provider: aws, type: vm, name: a, attributes: {x: '${aws.vm.b.id}'}}
  - {provider: aws, type: vm, name: b, attributes: {x: '${aws.vm.a.id}'}}
""")
        assert _strata(config_dir, 'validate') == 2
        err = capsys.readouterr().err
        assert "Cycle detected in resource graph involving 'aws.vm.a'" in err

    def test_missing_secret(self, config_dir, capsys):
        (config_dir / 'secrets.yaml').write_text("{}\n")
        assert _strata(config_dir, 'validate', '--json-output') == 2
        data = json.loads(capsys.readouterr().out)
        assert data['error_type'] == 'ValidationError'
        assert data['address'] == 'aws.database.main'
        assert 'STRATA_SECRET_DB_PASSWORD' in data['error']

    def test_unknown_variable(self, config_dir, capsys):
        assert _strata(config_dir, 'validate', '--var', 'colour=red') == 2
        assert "Unknown variable 'colour'" in capsys.readouterr().err

    def test_bad_config(self, config_dir, capsys):
        (config_dir / 'strata.yaml').write_text("max_workers: 0\n")
        assert _strata(config_dir, 'validate') == 2
        assert 'max_workers' in capsys.readouterr().err

    def test_check_providers_local_only(self, config_dir, capsys):
        assert _strata(config_dir, 'validate', '--check-providers') == 0


class TestPlanAndApply:
    """Tests for 'strata plan' and 'strata apply'."""

    def test_plan_preview(self, config_dir, capsys):
        assert _strata(config_dir, 'plan') == 0
        out = capsys.readouterr().out
        assert 'PLAN: web-stack' in out
        assert '+ aws.vm.web (create)' in out
        assert 'attached_to: (known after apply)' in out
        assert "password: '${secret.db_password}'" in out
        assert 'Plan: 3 to create, 0 to update, 0 to delete, 0 unchanged' in out
        assert _state(config_dir) == {}

    def test_plan_var_override(self, config_dir, capsys):
        assert _strata(config_dir, 'plan', '--var', 'size=large') == 0
        assert "size: 'large'" in capsys.readouterr().out

    def test_apply_yes(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes') == 0
        out = capsys.readouterr().out
        assert 'Apply complete' in out
        assert 'web_id = "vm-' in out

        state = _state(config_dir)
        assert set(state) == {'aws.vm.web', 'aws.storage.logs', 'aws.database.main'}
        assert state['aws.storage.logs']['attributes']['attached_to'] == state['aws.vm.web']['provider_id']
        assert state['aws.database.main']['attributes']['password'] == '${secret.db_password}'
        assert (config_dir / '.states' / 'ci' / 'last-apply.json').exists()

    def test_apply_twice_is_no_op(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes') == 0
        serial = json.loads((config_dir / '.states' / 'ci' / 'state.json').read_text())['serial']
        capsys.readouterr()

        assert _strata(config_dir, 'apply', '--yes') == 0
        assert 'No changes' in capsys.readouterr().out
        assert json.loads((config_dir / '.states' / 'ci' / 'state.json').read_text())['serial'] == serial

    def test_apply_json(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes', '--json-output') == 0
        data = json.loads(capsys.readouterr().out)
        assert data['verb'] == 'apply'
        assert data['success'] is True
        assert data['counts'] == {'applied': 3}
        assert data['outputs']['web_id'].startswith('vm-')
        assert data['outputs']['logs_link'].startswith('local://aws/storage/')

    def test_apply_json_requires_yes(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--json-output') == 2
        assert json.loads(capsys.readouterr().out)['error'] == '--json-output requires --yes for apply'

    @patch('builtins.input', return_value='n')
    def test_apply_declined(self, mock_input, config_dir, capsys):
        assert _strata(config_dir, 'apply') == 1
        assert 'Aborted.' in capsys.readouterr().out
        assert _state(config_dir) == {}

    @patch('builtins.input', return_value='y')
    def test_apply_confirmed(self, mock_input, config_dir):
        assert _strata(config_dir, 'apply') == 0
        assert len(_state(config_dir)) == 3

    def test_apply_requires_file_or_plan(self, config_dir):
        with pytest.raises(SystemExit):
            main(['apply', '--config', str(config_dir / 'strata.yaml')])

    def test_saved_plan(self, config_dir, capsys):
        plan_path = config_dir / 'plan.json'
        assert _strata(config_dir, 'plan', '--out', str(plan_path)) == 0
        assert json.loads(plan_path.read_text())['summary']['create'] == 3

        rc = main(['apply', '--config', str(config_dir / 'strata.yaml'),
                   '--plan', str(plan_path), '--yes'])
        assert rc == 0
        assert len(_state(config_dir)) == 3

    def test_stale_saved_plan(self, config_dir, capsys):
        plan_path = config_dir / 'plan.json'
        assert _strata(config_dir, 'plan', '--out', str(plan_path)) == 0
        assert _strata(config_dir, 'apply', '--yes') == 0
        capsys.readouterr()

        rc = main(['apply', '--config', str(config_dir / 'strata.yaml'),
                   '--plan', str(plan_path), '--yes'])
        assert rc == 2
        assert 'Plan is stale' in capsys.readouterr().err

    def test_target(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes', '--target', 'aws.storage.logs') == 0
        assert set(_state(config_dir)) == {'aws.vm.web', 'aws.storage.logs'}

    def test_unknown_target(self, config_dir, capsys):
        assert _strata(config_dir, 'plan', '--target', 'aws.vm.nope') == 2
        assert 'Unknown target' in capsys.readouterr().err

    def test_partial_apply(self, config_dir, capsys):
        original_create = LocalProvider.create

        def _create(self, type_, attributes):
            if type_ == 'vm':
                raise FatalProviderError('quota exceeded')
            return original_create(self, type_, attributes)

        with patch.object(LocalProvider, 'create', autospec=True, side_effect=_create):
            rc = _strata(config_dir, 'apply', '--yes', '--report-dir', str(config_dir / 'reports'))

        assert rc == 1
        out = capsys.readouterr().out
        assert 'aws.vm.web: failed (quota exceeded)' in out
        assert "aws.storage.logs: blocked (blocked by 'aws.vm.web')" in out
        assert 'Apply incomplete' in out
        assert set(_state(config_dir)) == {'aws.database.main'}
        reports = sorted(p.suffix for p in (config_dir / 'reports').iterdir())
        assert reports == ['.json', '.md']


class TestOtherVerbs:
    """Tests for destroy, refresh, state and output."""

    def test_output(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes') == 0
        web_id = _state(config_dir)['aws.vm.web']['provider_id']
        capsys.readouterr()

        assert _strata(config_dir, 'output', 'web_id') == 0
        assert capsys.readouterr().out.strip() == web_id

        assert _strata(config_dir, 'output', '--json-output') == 0
        assert json.loads(capsys.readouterr().out)['outputs']['web_id'] == web_id

    def test_output_unknown_name(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes') == 0
        assert _strata(config_dir, 'output', 'nope') == 2
        assert "Unknown output 'nope'" in capsys.readouterr().err

    def test_output_before_apply(self, config_dir, capsys):
        assert _strata(config_dir, 'output') == 2
        assert 'not in state' in capsys.readouterr().err

    def test_state_list_show_rm(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes') == 0
        capsys.readouterr()

        assert _strata(config_dir, 'state', 'list') == 0
        out = capsys.readouterr().out
        assert 'aws.vm.web' in out
        assert 'aws.storage.logs' in out

        assert _strata(config_dir, 'state', 'show', 'aws.vm.web') == 0
        assert 'provider_id: vm-' in capsys.readouterr().out

        assert _strata(config_dir, 'state', 'rm', 'aws.vm.web') == 0
        assert 'aws.vm.web' not in _state(config_dir)

    def test_state_show_unknown(self, config_dir, capsys):
        assert _strata(config_dir, 'state', 'show', 'aws.vm.nope') == 2
        assert "No state for 'aws.vm.nope'" in capsys.readouterr().err

    def test_destroy(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes') == 0
        capsys.readouterr()

        assert _strata(config_dir, 'destroy', '--yes') == 0
        assert 'DESTROY: web-stack' in capsys.readouterr().out
        assert _state(config_dir) == {}
        objects = json.loads((config_dir / '.states' / 'ci' / 'providers' / 'aws.json').read_text())
        assert all(not items for items in objects.values())

    def test_destroy_nothing(self, config_dir, capsys):
        assert _strata(config_dir, 'destroy', '--yes') == 0
        assert 'Nothing to destroy' in capsys.readouterr().out

    @patch('builtins.input', return_value='')
    def test_destroy_declined(self, mock_input, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes') == 0
        assert _strata(config_dir, 'destroy') == 1
        assert len(_state(config_dir)) == 3

    def test_refresh_detects_drift(self, config_dir, capsys):
        assert _strata(config_dir, 'apply', '--yes') == 0
        objects_path = config_dir / '.states' / 'ci' / 'providers' / 'aws.json'
        objects = json.loads(objects_path.read_text())
        for attributes in objects['vm'].values():
            attributes['size'] = 'large'
        objects_path.write_text(json.dumps(objects))
        capsys.readouterr()

        assert _strata(config_dir, 'refresh') == 0
        assert '~ aws.vm.web: drifted' in capsys.readouterr().out

        assert _strata(config_dir, 'plan') == 0
        assert "size: 'large' -> 'small'" in capsys.readouterr().out

    def test_workspaces_are_isolated(self, config_dir):
        assert _strata(config_dir, 'apply', '--yes') == 0
        assert _strata(config_dir, 'apply', '--yes', '--workspace', 'other') == 0
        other = json.loads((config_dir / '.states' / 'other' / 'state.json').read_text())
        assert set(other['resources']) == set(_state(config_dir))

    def test_corrupt_state_file(self, config_dir, capsys):
        state_path = config_dir / '.states' / 'ci' / 'state.json'
        state_path.parent.mkdir(parents=True)
        state_path.write_text('{not json')

        assert _strata(config_dir, 'state', 'list') == 2
        assert 'is not valid JSON' in capsys.readouterr().err

        assert _strata(config_dir, 'plan', '--json-output') == 2
        assert json.loads(capsys.readouterr().out)['error_type'] == 'StateError'

    def test_saved_plan_with_yaml_dates(self, config_dir, capsys):
        stack = config_dir / 'stack.yaml'
        stack.write_text(stack.read_text().replace(
            "      size: ${var.size}\n",
            "      size: ${var.size}\n      reviewed: 2024-01-02\n      ports: {80: open}\n",
        ))
        plan_path = config_dir / 'plan.json'

        assert _strata(config_dir, 'plan', '--out', str(plan_path)) == 0
        saved = json.loads(plan_path.read_text())
        web = next(c for c in saved['changes'] if c['address'] == 'aws.vm.web')
        assert web['spec']['attributes']['reviewed'] == '2024-01-02'

        assert _strata(config_dir, 'apply', '--yes') == 0
        capsys.readouterr()
        assert _strata(config_dir, 'plan') == 0
        assert 'No changes' in capsys.readouterr().out
