from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

"""Application entry point.

Serves the JSON API (phone scanner, remote clients) under Gunicorn, bound to
HOST:PORT from the environment.
"""

from biblion import create_app

app = create_app()
if __name__ == '__main__':
    import os
    import sys

    bind = f"{app.config['HOST']}:{app.config['PORT']}"
    command = [
        "gunicorn",
        "-w", "1",
        "-b", bind,
        "run:app"
    ]

    print(f"🚀 Launching Gunicorn with command: {' '.join(command)}")
    try:
        os.execvp(command[0], command)
    except FileNotFoundError:
        print("Error: 'gunicorn' command not found.", file=sys.stderr)
        print("Please install Gunicorn: pip install gunicorn", file=sys.stderr)
        sys.exit(1)
