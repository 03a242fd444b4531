"""
Entry point for the chat client: ``python -m chatapp.client run --user <id>``.
"""
from .cli import app


def main():
    """Launch the typer CLI."""
    app()


if __name__ == "__main__":
    main()
