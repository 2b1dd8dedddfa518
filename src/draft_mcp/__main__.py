"""Allow `python -m src.draft_mcp` to invoke the CLI."""

from src.draft_mcp.cli import app


def main() -> None:
    app(prog_name="draft-mcp")


if __name__ == "__main__":  # pragma: no cover
    main()
