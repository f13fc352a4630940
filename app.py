"""Application entry point for the hotel billing ledger API."""

import logging

from hotelfolio.webapp import create_app

app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(debug=True)
