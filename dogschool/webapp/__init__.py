"""Flask application providing the back-office UI of the training school."""

from __future__ import annotations

import datetime as dt
from typing import Any, Mapping

from flask import (
    Flask,
    flash,
    redirect,
    render_template,
    request,
    url_for,
)

from dogschool.training.dates import current_month, recent_months
from dogschool.training.ledger import TOTAL_SESSIONS, next_available_session_number
from dogschool.training.settlement import (
    BLOCK_PRICE_VAT_INCLUSIVE,
    EVALUATION_DEDUCTION,
    SETTLEMENT_PAID,
    VAT_RATE,
)
from dogschool.training.system import FetchError, SchoolSystem, ValidationError

LOAD_FAILED = "Could not load data, please try again"
SAVE_FAILED = "Could not save changes, please try again"


def create_app(
    database_path: str | None = None,
    config: Mapping[str, Any] | None = None,
    system: SchoolSystem | None = None,
) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(
        __name__,
        template_folder="templates",
    )
    app.config["SECRET_KEY"] = "dogschool-secret"
    app.config["DATABASE"] = "dogschool.db"
    app.config.from_prefixed_env("DOGSCHOOL")
    if config:
        app.config.update(config)
    if database_path:
        app.config["DATABASE"] = database_path

    system = system or SchoolSystem.open(app.config["DATABASE"])
    app.extensions["school"] = system

    @app.template_filter("eur")
    def format_eur(amount: float | None) -> str:
        return f"{amount or 0:,.2f} €"

    @app.template_filter("day")
    def format_day(value: str | None) -> str:
        return (value or "")[:10]

    @app.context_processor
    def inject_navigation() -> dict[str, Any]:
        return {
            "current_year": dt.date.today().year,
            "total_sessions": TOTAL_SESSIONS,
        }

    def selected_month() -> str:
        return request.args.get("month") or current_month()

    @app.get("/")
    def index() -> Any:
        return redirect(url_for("sessions_board"))

    @app.get("/sessions")
    def sessions_board() -> Any:
        city_id = request.args.get("city_id", type=int)
        try:
            cities = system.list_cities()
            clients = system.active_clients(city_id=city_id)
            upcoming = system.upcoming_sessions(city_id=city_id)
        except FetchError:
            app.logger.exception("Loading the sessions board failed")
            flash(LOAD_FAILED, "error")
            cities, clients, upcoming = [], [], []
        for client in clients:
            client["next_number"] = next_available_session_number(
                session["session_number"] for session in client["sessions"]
            )
        return render_template(
            "sessions.html",
            cities=cities,
            city_id=city_id,
            clients=clients,
            upcoming=upcoming,
            today=dt.date.today().isoformat(),
        )

    @app.post("/clients/<int:client_id>/sessions")
    def schedule_session(client_id: int) -> Any:
        try:
            system.schedule_session(
                client_id=client_id,
                session_number=request.form.get("session_number") or None,
                date=request.form.get("date", ""),
                time=request.form.get("time") or "10:00",
                comments=request.form.get("comments") or None,
            )
            flash("Session scheduled", "success")
        except ValidationError as exc:
            flash(str(exc), "error")
        except FetchError:
            app.logger.exception("Scheduling a session for client %s failed", client_id)
            flash(SAVE_FAILED, "error")
        return redirect(request.referrer or url_for("sessions_board"))

    @app.post("/sessions/<int:session_id>/complete")
    def complete_session(session_id: int) -> Any:
        try:
            session = system.mark_session_completed(session_id)
            if session["session_number"] == TOTAL_SESSIONS:
                flash("Session completed, program finished", "success")
            else:
                flash("Session completed", "success")
        except ValidationError as exc:
            flash(str(exc), "error")
        except FetchError:
            app.logger.exception("Completing session %s failed", session_id)
            flash(SAVE_FAILED, "error")
        return redirect(request.referrer or url_for("sessions_board"))

    @app.route("/clients", methods=["GET", "POST"])
    def clients() -> Any:
        if request.method == "POST":
            try:
                system.register_client(
                    name=request.form.get("name", "").strip(),
                    dog_breed=request.form.get("dog_breed") or None,
                    city_id=request.form.get("city_id", type=int),
                    address=request.form.get("address") or None,
                    phone=request.form.get("phone") or None,
                )
                flash("Client added", "success")
                return redirect(url_for("clients"))
            except ValidationError as exc:
                flash(str(exc), "error")
            except FetchError:
                app.logger.exception("Registering a client failed")
                flash(SAVE_FAILED, "error")
        try:
            rows = system.list_clients(
                status=request.args.get("status") or None,
                city_id=request.args.get("city_id", type=int),
                search=request.args.get("q") or None,
            )
            cities = system.list_cities()
        except FetchError:
            app.logger.exception("Loading clients failed")
            flash(LOAD_FAILED, "error")
            rows, cities = [], []
        return render_template("clients.html", clients=rows, cities=cities)

    @app.get("/clients/<int:client_id>")
    def client_detail(client_id: int) -> Any:
        try:
            client = system.get_client(client_id)
            trainers = system.list_trainers()
        except ValidationError as exc:
            flash(str(exc), "error")
            return redirect(url_for("clients"))
        except FetchError:
            app.logger.exception("Loading client %s failed", client_id)
            flash(LOAD_FAILED, "error")
            return redirect(url_for("clients"))
        return render_template(
            "client_detail.html",
            client=client,
            trainers=trainers,
            next_number=next_available_session_number(
                session["session_number"] for session in client["sessions"]
            ),
        )

    @app.post("/clients/<int:client_id>/evaluations")
    def record_evaluation(client_id: int) -> Any:
        try:
            system.record_evaluation(
                client_id=client_id,
                adiestrador_id=request.form.get("adiestrador_id", type=int),
                result=request.form.get("result", ""),
                comments=request.form.get("comments") or None,
            )
            flash("Evaluation recorded", "success")
        except ValidationError as exc:
            flash(str(exc), "error")
        except FetchError:
            app.logger.exception("Recording an evaluation for client %s failed", client_id)
            flash(SAVE_FAILED, "error")
        return redirect(url_for("client_detail", client_id=client_id))

    @app.get("/trainers/<int:trainer_id>/billing")
    def trainer_billing(trainer_id: int) -> Any:
        month = selected_month()
        statement = None
        try:
            statement = system.trainer_statement(adiestrador_id=trainer_id, month=month)
        except ValidationError as exc:
            flash(str(exc), "error")
        except FetchError:
            app.logger.exception("Computing billing for trainer %s failed", trainer_id)
            flash(LOAD_FAILED, "error")
        return render_template(
            "billing.html",
            statement=statement,
            trainer_id=trainer_id,
            month=month,
            months=recent_months(),
            block_price=BLOCK_PRICE_VAT_INCLUSIVE,
            evaluation_deduction=EVALUATION_DEDUCTION,
            vat_percent=round(VAT_RATE * 100),
        )

    @app.get("/admin/settlements")
    def admin_settlements() -> Any:
        month = selected_month()
        city_id = request.args.get("city_id", type=int)
        date_from = request.args.get("date_from") or None
        date_to = request.args.get("date_to") or None
        overview = None
        performance: list[dict] = []
        cities: list[dict] = []
        try:
            overview = system.trainer_overview(month=month)
        except ValidationError as exc:
            flash(str(exc), "error")
        except FetchError:
            app.logger.exception("Computing the payroll overview for %s failed", month)
            flash(LOAD_FAILED, "error")
        try:
            cities = system.list_cities()
            performance = system.trainer_performance(city_id=city_id, date_from=date_from, date_to=date_to)
        except ValidationError as exc:
            flash(str(exc), "error")
        except FetchError:
            app.logger.exception("Computing trainer performance failed")
            flash(LOAD_FAILED, "error")
        return render_template(
            "admin_settlements.html",
            overview=overview,
            performance=performance,
            cities=cities,
            city_id=city_id,
            date_from=date_from or "",
            date_to=date_to or "",
            month=month,
            months=recent_months(),
            paid=SETTLEMENT_PAID,
        )

    @app.post("/admin/settlements/<int:trainer_id>")
    def settle_trainer(trainer_id: int) -> Any:
        month = request.form.get("month") or current_month()
        try:
            system.settle_trainer(
                adiestrador_id=trainer_id,
                month=month,
                status=request.form.get("status") or SETTLEMENT_PAID,
            )
            flash("Settlement recorded", "success")
        except ValidationError as exc:
            flash(str(exc), "error")
        except FetchError:
            app.logger.exception("Settling trainer %s for %s failed", trainer_id, month)
            flash(SAVE_FAILED, "error")
        return redirect(url_for("admin_settlements", month=month))

    return app


__all__ = ["create_app"]
