import sys

if len(sys.argv) == 1:
    from tilesr.main import build_parser

    build_parser().print_help()
    raise SystemExit(0)

from tilesr.main import main

main()
