import json

import pytest
import yaml
from click.testing import CliRunner

from fakes import FakeProbe, FakeRunner
from stackup.CLI import main
from stackup.CLI.main import cli

STACK = """
name: devenv
profiles: [production-test]
parameters:
  SERVE_PATH:
    env: NGINX_SERVE_PATH
    default: ./public
services:
  postgres:
    image: postgres:16
    port: 5432
  redis:
    image: redis:7
    port: 6379
  nginx:
    image: nginx
    port: "8080:80"
    profiles: [production-test]
    depends_on: [postgres]
    volumes:
      - ${SERVE_PATH}:/usr/share/nginx/html:ro
    restart: always
"""


@pytest.fixture
def stack_file(tmp_path):
    path = tmp_path / "stack.yml"
    path.write_text(STACK)
    return str(path)


@pytest.fixture
def engine(monkeypatch):
    runner = FakeRunner()
    probe = FakeProbe(ready={5432, 6379, 8080})
    monkeypatch.setattr(main, 'ContainerRunner', lambda project, base_dir='.', docker_bin='docker': runner)
    monkeypatch.setattr(main, 'ReadinessProbe', lambda timeout=30, interval=0.5: probe)
    monkeypatch.delenv('NGINX_SERVE_PATH', raising=False)
    monkeypatch.delenv('STACKUP_PROFILE', raising=False)
    return runner, probe


def invoke(stack_file, *args):
    return CliRunner().invoke(cli, ['-f', stack_file] + list(args), obj={})


def test_help():
    result = CliRunner().invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ('up', 'down', 'status', 'config', 'logs'):
        assert command in result.output


def test_missing_file(tmp_path):
    result = invoke(str(tmp_path / "absent.yml"), 'up')
    assert result.exit_code == 1
    assert 'not found' in result.output


def test_invalid_stack_file(tmp_path, engine):
    path = tmp_path / "stack.yml"
    path.write_text("services:\n  web:\n    image: nginx\n    depends_on: [ghost]\n    port: 80\n")
    runner, _ = engine

    result = invoke(str(path), 'up')

    assert result.exit_code == 1
    assert 'Invalid stack file' in result.output
    assert 'ghost' in result.output
    assert runner.started == []


def test_up_ready(stack_file, engine):
    runner, _ = engine
    result = invoke(stack_file, 'up')
    assert result.exit_code == 0, result.output
    assert 'Stack ready.' in result.output
    assert sorted(runner.started) == ['postgres', 'redis']


def test_up_with_profile(stack_file, engine):
    runner, _ = engine
    result = invoke(stack_file, 'up', '--profile', 'production-test')
    assert result.exit_code == 0, result.output
    assert runner.started[-1] == 'nginx'


def test_up_partial_failure(stack_file, engine):
    runner, probe = engine
    probe.ready.discard(6379)

    result = invoke(stack_file, 'up')

    assert result.exit_code == 2
    assert 'redis' in result.output
    assert 'Stack ready.' not in result.output
    assert 'postgres' in runner.running


def test_up_partial_failure_with_teardown(stack_file, engine):
    runner, probe = engine
    probe.ready.discard(6379)

    result = invoke(stack_file, 'up', '--teardown-on-failure')

    assert result.exit_code == 2
    assert runner.running == set()


def test_up_unknown_profile(stack_file, engine):
    runner, _ = engine
    result = invoke(stack_file, 'up', '--profile', 'benchmark')
    assert result.exit_code == 1
    assert "Unknown profile 'benchmark'" in result.output
    assert runner.started == []


def test_up_unknown_param(stack_file, engine):
    result = invoke(stack_file, 'up', '--param', 'SERVE_PTH=/tmp/a')
    assert result.exit_code == 1
    assert 'SERVE_PTH' in result.output


def test_down(stack_file, engine):
    runner, _ = engine
    runner.running.update({'postgres', 'redis'})

    result = invoke(stack_file, 'down')

    assert result.exit_code == 0, result.output
    assert 'Services stopped.' in result.output
    assert runner.stopped == ['nginx', 'redis', 'postgres']
    assert runner.running == set()


def test_down_reports_unclean_stop(stack_file, engine):
    runner, _ = engine
    runner.unclean.add('nginx')

    result = invoke(stack_file, 'down', '--grace', '3')

    assert result.exit_code == 0
    assert 'Warning: nginx did not exit within the 3s grace period' in result.output


def test_status_json(stack_file, engine):
    runner, _ = engine
    runner.running.add('postgres')

    result = invoke(stack_file, 'status', '--json')

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data['project'] == 'devenv'
    assert data['phase'] == 'partially-failed'
    assert data['services']['postgres']['phase'] == 'ready'
    assert data['services']['redis']['phase'] == 'stopped'
    assert 'nginx' not in data['services']


def test_status_text(stack_file, engine):
    runner, _ = engine
    runner.running.update({'postgres', 'redis'})

    result = invoke(stack_file, 'status')

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == 'Stack devenv: ready'
    assert lines[1].split() == ['SERVICE', 'STATE', 'ELAPSED', 'DETAIL']
    assert lines[2].split()[:2] == ['postgres', 'ready']


def test_config(stack_file, engine):
    result = invoke(stack_file, 'config', '--param', 'SERVE_PATH=/srv/site')

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(result.output)
    assert data['project'] == 'devenv'
    assert [svc['name'] for svc in data['services']] == ['postgres', 'redis', 'nginx']
    nginx = data['services'][2]
    assert nginx['volumes'][0] == {'source': '/srv/site', 'target': '/usr/share/nginx/html', 'read_only': True}
    assert nginx['restart'] == 'always'


def test_config_param_from_environment(stack_file, engine, monkeypatch):
    monkeypatch.setenv('NGINX_SERVE_PATH', '/tmp/b')
    result = invoke(stack_file, 'config')
    data = yaml.safe_load(result.output)
    assert data['services'][2]['volumes'][0]['source'] == '/tmp/b'

    result = invoke(stack_file, 'config', '--param', 'SERVE_PATH=/tmp/a')
    data = yaml.safe_load(result.output)
    assert data['services'][2]['volumes'][0]['source'] == '/tmp/a'


def test_config_profile_filter(stack_file, engine):
    result = invoke(stack_file, 'config', '--profile', 'production-test')
    assert result.exit_code == 0, result.output
    assert len(yaml.safe_load(result.output)['services']) == 3

    result = invoke(stack_file, 'config', '--profile', '')
    assert [svc['name'] for svc in yaml.safe_load(result.output)['services']] == ['postgres', 'redis']


def test_env_file_next_to_stack(stack_file, engine, tmp_path):
    (tmp_path / ".env").write_text("NGINX_SERVE_PATH=/from/env-file\n")
    result = invoke(stack_file, 'config')
    data = yaml.safe_load(result.output)
    assert data['services'][2]['volumes'][0]['source'] == '/from/env-file'


def test_logs(stack_file, engine):
    runner, _ = engine
    result = invoke(stack_file, 'logs', '--tail', '20', 'postgres')
    assert result.exit_code == 0, result.output
    assert runner.logged == [('postgres', False, 20)]


def test_logs_unknown_service(stack_file, engine):
    result = invoke(stack_file, 'logs', 'mysql')
    assert result.exit_code == 1
    assert 'mysql' in result.output
