from __future__ import annotations

import runpy

import pytest


def test_init_exports_version() -> None:
    import gitcrew

    assert gitcrew.__all__ == ["__version__"]
    assert isinstance(gitcrew.__version__, str)
    assert gitcrew.__version__


def test_main_module_import_exposes_cli_main() -> None:
    import gitcrew.__main__ as main_mod
    import gitcrew.cli as cli

    assert main_mod.main is cli.main


def test_main_module_exec_uses_cli_return_code(monkeypatch: pytest.MonkeyPatch) -> None:
    import gitcrew.cli as cli

    monkeypatch.setattr(cli, "main", lambda: 17)

    with pytest.raises(SystemExit) as exc:
        runpy.run_module("gitcrew.__main__", run_name="__main__")

    assert exc.value.code == 17


def test_main_reports_unreadable_config_as_crew_error(
    tmp_path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    import gitcrew.cli as cli

    (tmp_path / ".crew").mkdir()
    (tmp_path / ".crew" / "config.toml").write_text('[complete]\nauto_fix_max_retries = "x"\n')
    monkeypatch.setattr(cli, "resolve_repo_root", lambda control_root: tmp_path)
    monkeypatch.setenv("CREW_CONTROL_ROOT", str(tmp_path))

    assert cli.main(["list"]) == 1

    err = capsys.readouterr().err
    assert err.startswith("[crew] error: [complete] auto_fix_max_retries must be a number")


def test_main_maps_keyboard_interrupt_to_130(monkeypatch: pytest.MonkeyPatch) -> None:
    import gitcrew.cli as cli

    def interrupted(control_root):
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "build_app", interrupted)

    assert cli.main(["list"]) == 130
