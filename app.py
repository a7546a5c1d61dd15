"""Application entry point for the dog-training school back office."""

import logging

from dogschool.webapp import create_app

logging.basicConfig(level=logging.INFO)

app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
