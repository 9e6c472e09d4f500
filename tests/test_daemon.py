from unittest import mock

import pytest

from limaguest.daemon import main, parse_duration, run_daemon


def test_parse_duration_default_tick():
    assert parse_duration("3s") == 3.0


def test_parse_duration_zero():
    assert parse_duration("0") == 0.0
    assert parse_duration("-0") == 0.0


def test_parse_duration_combined_units():
    assert parse_duration("1m30s") == parse_duration("90s")
    assert parse_duration("1h") == parse_duration("60m")
    assert parse_duration("2h45m") == parse_duration("165m")


def test_parse_duration_sign_and_fraction():
    assert parse_duration("-1.5h") == -parse_duration("90m")
    assert parse_duration("300ms") == pytest.approx(parse_duration("0.3s"))
    assert parse_duration("+5s") == parse_duration("5s")


@pytest.mark.parametrize("text", ["", "3", "3x", "s", "-", "1.5.2s", "3 s"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError, match="invalid duration"):
        parse_duration(text)


def test_run_daemon_requires_tick():
    with pytest.raises(ValueError, match="tick must be specified"):
        run_daemon("/nonexistent/ga.sock", 0.0)


def test_run_daemon_rejects_negative_tick():
    with pytest.raises(ValueError, match="non-positive"):
        run_daemon("/nonexistent/ga.sock", -1.0)


def test_run_daemon_requires_root():
    with mock.patch("os.geteuid", return_value=1000):
        with pytest.raises(PermissionError, match="must run as the root"):
            run_daemon("/nonexistent/ga.sock", 3.0)


def test_main_zero_tick_fails():
    assert main(["daemon", "--tick", "0"]) == 1


def test_main_bad_tick_is_usage_error():
    with pytest.raises(SystemExit) as info:
        main(["daemon", "--tick", "bogus"])
    assert info.value.code == 2


def test_main_without_command_prints_help(capsys):
    assert main([]) == 0
    assert "daemon" in capsys.readouterr().out