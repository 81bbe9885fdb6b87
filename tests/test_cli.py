import pytest

from zedex.cli import build_parser, main, resolve_config


def test_parser_reads_all_extensions_flags():
    args = build_parser().parse_args(
        ["--root-dir", "/tmp/z", "get", "all-extensions", "--async-mode", "--all-versions", "--rate-limit", "0.5"]
    )
    assert args.command == "get"
    assert args.target == "all-extensions"
    assert args.async_mode and args.all_versions
    assert args.rate_limit == 0.5
    assert resolve_config(args).root_dir == "/tmp/z"


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_missing_config_file_exits():
    args = build_parser().parse_args(["--config", "/nonexistent/zedex.yaml", "verify"])
    with pytest.raises(SystemExit, match="config file not found"):
        resolve_config(args)


def test_verify_exit_code(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--root-dir", str(tmp_path), "verify"])
    assert excinfo.value.code == 1
    assert "[NG] failed to load" in capsys.readouterr().out
