# Overview: Flask extension instances and per-app collaborators (event bus, payment gateway).

from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()


def get_event_bus():
    """Event bus bound to the current application."""
    return current_app.extensions["retailpos.event_bus"]


def get_payment_gateway():
    """Payment collaborator bound to the current application."""
    return current_app.extensions["retailpos.payment_gateway"]
