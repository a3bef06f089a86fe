from __future__ import annotations

import json

import pytest

PLUGIN = ("-p", "mobile_testing.plugin")


def _results(pytester: pytest.Pytester) -> dict:
    return json.loads((pytester.path / "reports" / "results.json").read_text(encoding="utf-8"))


def test_flaky_marker_reruns_until_pass(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        """
        import pytest

        calls = []

        @pytest.mark.flaky_test(max_retries=3, delay_ms=0, reason="slow animation")
        def test_sometimes():
            calls.append(1)
            assert len(calls) >= 3
        """
    )
    result = pytester.runpytest(*PLUGIN)
    result.assert_outcomes(passed=1)
    assert result.parseoutcomes()["rerun"] == 2
    payload = _results(pytester)
    assert payload["counts"] == {"passed": 1}


def test_exhausted_retries_report_one_failure(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        """
        def test_always_fails():
            assert False, "broken login"
        """
    )
    result = pytester.runpytest(*PLUGIN, "--mt-set", "retry.count=2", "--mt-set", "retry.delay_ms=0")
    result.assert_outcomes(failed=1)
    assert result.parseoutcomes()["rerun"] == 2
    payload = _results(pytester)
    assert payload["counts"] == {"failed": 1}
    assert "broken login" in payload["results"][0]["error_message"]

    stats = json.loads((pytester.path / "reports" / "flake_stats.json").read_text(encoding="utf-8"))
    assert list(stats.values()) == [{"test_exhausted_retries_report_one_failure.py::test_always_fails": 2}]


def test_zero_retries_fails_immediately(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        """
        def test_fails():
            assert False
        """
    )
    result = pytester.runpytest(*PLUGIN, "--mt-set", "retry.count=0")
    result.assert_outcomes(failed=1)
    assert "rerun" not in result.parseoutcomes()


def test_setup_errors_are_not_retried(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        """
        import pytest

        @pytest.fixture
        def broken():
            raise RuntimeError("device offline")

        @pytest.mark.flaky_test(max_retries=3, delay_ms=0)
        def test_uses_broken(broken):
            pass
        """
    )
    result = pytester.runpytest(*PLUGIN)
    result.assert_outcomes(errors=1)
    assert "rerun" not in result.parseoutcomes()
    assert _results(pytester)["counts"] == {"error": 1}


def test_config_fixtures_see_command_line_options(pytester: pytest.Pytester) -> None:
    pytester.makefile(".ini", mobile_testing="[mobile]\nthread.count = 3\n")
    pytester.makepyfile(
        """
        def test_config(mobile_config, suite_runtime):
            assert mobile_config.platform() == "iOS"
            assert mobile_config.thread_count() == 3
            assert suite_runtime.config is mobile_config
        """
    )
    result = pytester.runpytest(*PLUGIN, "--mt-platform", "iOS", "--mt-config", "mobile_testing.ini")
    result.assert_outcomes(passed=1)


def test_server_start_failure_aborts_the_run(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        """
        def test_never_runs():
            pass
        """
    )
    result = pytester.runpytest(
        *PLUGIN, "--mt-set", "appium.local=true", "--mt-set", "appium.fallback_enabled=false"
    )
    assert result.ret == pytest.ExitCode.INTERRUPTED
    output = result.stdout.str() + result.stderr.str()
    assert "Appium server startup failed" in output
    assert "fallback is disabled" in output


def test_invalid_override_is_a_usage_error(pytester: pytest.Pytester) -> None:
    pytester.makepyfile("def test_ok():\n    pass\n")
    result = pytester.runpytest(*PLUGIN, "--mt-set", "no-equals-sign")
    assert result.ret == pytest.ExitCode.USAGE_ERROR


def test_shared_configuration_matches_the_fixture(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        """
        from mobile_testing.app.configuration import get_configuration

        def test_shared(mobile_config):
            assert get_configuration() is mobile_config
            assert get_configuration().platform() == "iOS"
        """
    )
    result = pytester.runpytest(*PLUGIN, "--mt-platform", "iOS")
    result.assert_outcomes(passed=1)


def test_unknown_flaky_keyword_is_a_usage_error(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        """
        import pytest

        @pytest.mark.flaky_test(retries=2)
        def test_typo():
            pass
        """
    )
    result = pytester.runpytest(*PLUGIN)
    assert result.ret == pytest.ExitCode.USAGE_ERROR
    output = result.stdout.str() + result.stderr.str()
    assert "test_unknown_flaky_keyword_is_a_usage_error.py::test_typo" in output
    assert "retries" in output
    assert "INTERNALERROR" not in output


def test_teardown_failure_of_a_retried_attempt_is_reported(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        """
        import pytest

        attempts = []

        @pytest.fixture
        def device():
            attempts.append(1)
            yield
            if len(attempts) == 1:
                raise RuntimeError("app did not close")

        @pytest.mark.flaky_test(max_retries=2, delay_ms=0)
        def test_flaky(device):
            assert len(attempts) >= 2
        """
    )
    result = pytester.runpytest(*PLUGIN)
    result.assert_outcomes(passed=1, errors=1)
    assert result.parseoutcomes()["rerun"] == 1
    result.stdout.fnmatch_lines(["*app did not close*"])


def test_collect_only_creates_no_report_dirs(pytester: pytest.Pytester) -> None:
    pytester.makepyfile("def test_ok():\n    pass\n")
    result = pytester.runpytest(*PLUGIN, "--collect-only")
    assert result.ret == pytest.ExitCode.OK
    assert not (pytester.path / "reports").exists()
