"""
fabstock: shop-floor material management backend.
Shared SQLAlchemy instance; every model module imports ``db`` from here.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
