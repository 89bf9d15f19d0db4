"""Tests for validation module."""

from unittest.mock import patch

from hostconverge.validation import (
    format_preflight_results,
    run_preflight_checks,
    step_tools,
    validate_privileges,
    validate_sources,
    validate_tools,
)


def _which(*available):
    """shutil.which stand-in that finds only the named tools."""
    return lambda tool: f"/usr/bin/{tool}" if tool in available else None


class TestValidatePrivileges:
    """Tests for root privilege check."""

    @patch('hostconverge.validation.os.geteuid', return_value=0)
    def test_root_passes(self, _mock_euid):
        """Running as root yields no errors or warnings."""
        assert validate_privileges() == ([], [])

    @patch('hostconverge.validation.os.geteuid', return_value=1000)
    def test_non_root_fails(self, _mock_euid):
        """Non-root run is an error with a sudo hint."""
        errors, warnings = validate_privileges()
        assert len(errors) == 1
        assert 'sudo hostconverge run' in errors[0]
        assert warnings == []

    @patch('hostconverge.validation.os.geteuid', return_value=1000)
    def test_non_root_check_mode_warns(self, _mock_euid):
        """Check mode only reads, so non-root is a warning."""
        errors, warnings = validate_privileges(check_mode=True)
        assert errors == []
        assert len(warnings) == 1


class TestStepTools:
    """Tests for per-step tool requirements."""

    def test_user_with_password_needs_chpasswd(self, make_step):
        step = make_step('user', name='lab', password_secret='pw')
        assert 'chpasswd' in step_tools(step)
        assert 'chpasswd' not in step_tools(make_step('user', name='lab'))

    def test_template_validate_command(self, make_step, tmp_path):
        step = make_step('template', dest=str(tmp_path / 'x'), content='x',
                         validate='nginx -t -c %s')
        assert step_tools(step) == ['nginx']

    def test_file_needs_nothing(self, make_step, tmp_path):
        assert step_tools(make_step('file', path=str(tmp_path))) == []


class TestValidateTools:
    """Tests for host tool availability."""

    def test_all_present(self, make_step):
        """Tools on PATH are reported once each."""
        steps = [make_step('service', name='docker'), make_step('service', name='nginx')]
        with patch('hostconverge.validation.shutil.which', side_effect=_which('systemctl')):
            passed, errors, warnings = validate_tools(steps)
        assert passed == ['systemctl']
        assert errors == []
        assert warnings == []

    def test_missing_tool_names_steps(self, make_step):
        """Missing tool error lists the steps that need it."""
        steps = [make_step('firewall_rule', label='Open web port', port=80)]
        with patch('hostconverge.validation.shutil.which', side_effect=_which()):
            _, errors, _ = validate_tools(steps)
        assert len(errors) == 1
        assert "'ufw' not found" in errors[0]
        assert 'Open web port' in errors[0]

    def test_docker_installed_by_earlier_step(self, make_step):
        """A docker.io package step satisfies later container steps."""
        steps = [
            make_step('package', name='docker.io'),
            make_step('container', name='web', image='nginx'),
        ]
        with patch('hostconverge.validation.shutil.which',
                   side_effect=_which('dpkg-query', 'apt-get')):
            _, errors, _ = validate_tools(steps)
        assert errors == []

    def test_docker_needed_before_install(self, make_step):
        """Installing docker after the container step does not help it."""
        steps = [
            make_step('container', name='web', image='nginx'),
            make_step('package', name='docker.io'),
        ]
        with patch('hostconverge.validation.shutil.which',
                   side_effect=_which('dpkg-query', 'apt-get')):
            _, errors, _ = validate_tools(steps)
        assert len(errors) == 1
        assert "'docker'" in errors[0]

    def test_best_effort_only_warns(self, make_step):
        """Tools needed only by best-effort steps produce warnings."""
        steps = [make_step('firewall_rule', port=80, best_effort=True)]
        with patch('hostconverge.validation.shutil.which', side_effect=_which()):
            _, errors, warnings = validate_tools(steps)
        assert errors == []
        assert len(warnings) == 1


class TestValidateSources:
    """Tests for local source file checks."""

    def test_present_and_missing(self, make_step, tmp_path):
        src = tmp_path / 'index.html.j2'
        src.write_text('x')
        steps = [
            make_step('template', dest=str(tmp_path / 'a'), src=str(src)),
            make_step('archive', label='Bundle', dest=str(tmp_path / 'b'),
                      src=str(tmp_path / 'missing.tar.gz')),
            make_step('archive', dest=str(tmp_path / 'c'),
                      url='https://example.com/x.tar.gz', checksum=f"sha256:{'a' * 64}"),
        ]
        passed, errors = validate_sources(steps)
        assert passed == [f"{src} exists"]
        assert len(errors) == 1
        assert 'missing.tar.gz' in errors[0]
        assert 'Bundle' in errors[0]


class TestRunPreflightChecks:
    """Tests for run_preflight_checks()."""

    @patch('hostconverge.validation.os.geteuid', return_value=0)
    @patch('hostconverge.validation.shutil.which', side_effect=_which('systemctl'))
    def test_success(self, _mock_which, _mock_euid, make_step):
        success, results = run_preflight_checks([make_step('service', name='docker')])
        assert success
        assert results['privileges']['passed'] == ['Running as root']
        assert results['tools']['passed'] == ['systemctl']

    @patch('hostconverge.validation.os.geteuid', return_value=1000)
    @patch('hostconverge.validation.shutil.which', side_effect=_which('systemctl'))
    def test_non_root_fails(self, _mock_which, _mock_euid, make_step):
        success, results = run_preflight_checks([make_step('service', name='docker')])
        assert not success
        assert results['privileges']['failed']

    @patch('hostconverge.validation.os.geteuid', return_value=1000)
    @patch('hostconverge.validation.shutil.which', side_effect=_which('systemctl'))
    def test_check_mode_non_root_passes(self, _mock_which, _mock_euid, make_step):
        success, results = run_preflight_checks([make_step('service', name='docker')],
                                                check_mode=True)
        assert success
        assert results['privileges']['warnings']


class TestFormatPreflightResults:
    """Tests for preflight output formatting."""

    def test_format(self):
        results = {
            'privileges': {'passed': ['Running as root'], 'failed': [], 'warnings': []},
            'tools': {'passed': [], 'failed': ["'ufw' not found on PATH\n  apt-get install ufw"],
                      'warnings': []},
            'sources': {'passed': [], 'failed': [], 'warnings': []},
        }
        output = format_preflight_results('site', results, hostname='web01')
        assert "Preflight checks for 'site' on 'web01'" in output
        assert '✓ Running as root' in output
        assert "✗ 'ufw' not found on PATH" in output
        assert '    apt-get install ufw' in output
        assert 'Source files' not in output
        assert 'Some checks failed' in output

    def test_all_passed(self):
        results = {
            'privileges': {'passed': ['Running as root'], 'failed': [], 'warnings': []},
        }
        assert 'All checks passed' in format_preflight_results('site', results)
