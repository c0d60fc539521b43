#!/usr/bin/env python
import os
import sys
from pathlib import Path


def main():
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "gateway.settings")
    # Apps live under web/apps and are imported by their bare name ("orders").
    sys.path.insert(0, str(Path(__file__).resolve().parent / "apps"))
    from django.core.management import execute_from_command_line

    execute_from_command_line(sys.argv)


if __name__ == "__main__":
    main()
