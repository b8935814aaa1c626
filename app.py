"""Flask Anwendung für den Klimaserver (nur lesend)."""
from __future__ import annotations

from typing import Iterable

from flask import Flask, abort, jsonify, render_template

from db import StorageError
from snapshot import full_snapshot, status
from timeseries import TimeSeriesStore


def create_app(
    store: TimeSeriesStore,
    modules: Iterable = (),
    storage=None,
) -> Flask:
    modules = tuple(modules)
    app = Flask(__name__)

    @app.route("/status")
    def api_status():
        return jsonify(status(store))

    @app.route("/fullData")
    def api_full_data():
        response = jsonify(full_snapshot(store, modules))
        response.headers["Access-Control-Allow-Origin"] = "*"
        return response

    @app.route("/view/<module>")
    def api_view(module: str):
        if storage is None:
            abort(404)
        try:
            return jsonify(storage.view(module))
        except StorageError:
            app.logger.exception("Ansicht für Modul %s nicht verfügbar", module)
            abort(404)

    @app.route("/charts")
    def charts():
        return render_template("charts.html", modules=[m.name for m in modules])

    return app
