import sys
from unittest.mock import patch

import pytest


def test_no_args_prints_help_and_exits_0(monkeypatch) -> None:
    if "tilesr.__main__" in sys.modules:
        del sys.modules["tilesr.__main__"]
    monkeypatch.setattr(sys, "argv", ["tilesr"])

    with patch("tilesr.main.build_parser") as build_parser:
        with patch("tilesr.main.main") as main:
            parser = build_parser.return_value
            with pytest.raises(SystemExit) as e:
                import tilesr.__main__  # noqa: F401

            assert e.value.code == 0
            parser.print_help.assert_called_once()
            main.assert_not_called()


def test_with_args_dispatches_to_main(monkeypatch) -> None:
    if "tilesr.__main__" in sys.modules:
        del sys.modules["tilesr.__main__"]
    monkeypatch.setattr(sys, "argv", ["tilesr", "--input", "in.mp4", "--output", "out.mp4"])

    with patch("tilesr.main.main") as main:
        import tilesr.__main__  # noqa: F401
        main.assert_called_once()
