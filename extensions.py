"""
Flask extension instances.

Every extension is created unbound here and attached to the application in
app.py, so models, services and blueprints can import them without a
circular import on the app object.
"""

from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from apscheduler.schedulers.background import BackgroundScheduler


db = SQLAlchemy()
login_manager = LoginManager()
scheduler = BackgroundScheduler()
