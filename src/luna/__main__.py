"""Allow `python -m luna` to launch the console."""

from luna.main import cli_entry

cli_entry()
