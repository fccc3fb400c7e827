"""Main entry point for the sitewatch command line."""

import sys


def main_cli() -> None:
    """Entry point for the CLI application."""
    try:
        from .cli.main import cli

        cli()
    except KeyboardInterrupt:
        print("\n❌ Operation cancelled by user", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"❌ Error: {str(e)}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main_cli()
