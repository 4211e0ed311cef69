"""
Convenience entrypoint for the landmark voice guide.

Allows running `python main.py` in addition to `python -m landmark_voice`.
"""

from landmark_voice.cli import main


if __name__ == "__main__":
    main()
