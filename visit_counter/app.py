from flask import Flask, jsonify

from .counter import CounterService
from .store import StoreError

FAILURE = "Something went wrong"


def create_app(service: CounterService, response_format: str = "text") -> Flask:
    app = Flask(__name__)

    @app.get("/")
    def visits():
        visit = service.increment_and_get()
        if response_format == "json":
            return jsonify(message="Visit recorded", visits=visit.current)
        # the text body shows the count before this visit
        return f"Number of visits is {visit.previous}", 200, {"Content-Type": "text/plain; charset=utf-8"}

    @app.errorhandler(StoreError)
    def store_failed(e):
        app.logger.error("Store operation error on %s: %s", service.store.name, e, exc_info=e)
        return FAILURE, 500, {"Content-Type": "text/plain; charset=utf-8"}

    return app
