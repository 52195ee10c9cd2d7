"""Rental desk: bookings, pricing and invoicing for a vehicle rental shop.

The service is a Flask application backed by SQLAlchemy.  Customers browse
vehicles and request bookings; staff take each booking through
confirmation, collection, return, invoicing and payment.
"""

import logging

from flask import Flask
from flask.logging import default_handler

from .config import Config
from .errors import register_error_handlers
from .models import Package, PackageCustomCost, Policy, User, Vehicle, db
from .permissions import sync_permission_catalogue


def create_app(config_object=None, overrides=None) -> Flask:
    """Build the application.

    Configuration is layered: ``config_object`` (default :class:`Config`),
    then ``RENTDESK_*`` environment variables, then ``overrides``.
    """
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    app.config.from_prefixed_env("RENTDESK")
    if overrides:
        app.config.update(overrides)

    level = app.config['LOG_LEVEL']
    app.logger.setLevel(level)
    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(level)
    if default_handler not in package_logger.handlers:
        package_logger.addHandler(default_handler)

    db.init_app(app)
    register_error_handlers(app, db)

    from . import admin, api
    app.register_blueprint(api.bp)
    app.register_blueprint(admin.bp)

    app.logger.debug("rentdesk app created with database %s",
                     app.config['SQLALCHEMY_DATABASE_URI'])
    return app


def init_db() -> None:
    """Create all tables and the permission catalogue."""
    db.create_all()
    created = sync_permission_catalogue()
    db.session.commit()
    logging.getLogger(__name__).info("database initialised (%d permissions added)", created)


def seed_demo() -> None:
    """Load a small demo fleet and one account per role."""
    if User.query.first() is not None:
        return
    db.session.add_all([
        User(name='Super Admin', email='root@rentdesk.local', role='SUPER_ADMIN'),
        User(name='Office Admin', email='admin@rentdesk.local', role='ADMIN'),
        User(name='Desk Manager', email='manager@rentdesk.local', role='MANAGER'),
        User(name='Sample Customer', email='customer@rentdesk.local', phone='+94 77 123 4567'),
    ])
    vehicles = [
        Vehicle(name='Toyota Axio', brand='Toyota', model='Axio', year=2018, category='Sedan',
                transmission='AUTOMATIC', fuel_type='PETROL', seats=5, price_per_day=5000,
                featured=True),
        Vehicle(name='Suzuki Wagon R', brand='Suzuki', model='Wagon R', year=2019,
                category='Hatchback', transmission='AUTOMATIC', fuel_type='HYBRID', seats=4,
                price_per_day=3500),
        Vehicle(name='Toyota KDH', brand='Toyota', model='KDH', year=2015, category='Van',
                transmission='MANUAL', fuel_type='DIESEL', seats=14, price_per_day=9000),
    ]
    db.session.add_all(vehicles)
    airport = Package(name='Airport Pickup', type='AIRPORT_PICKUP', base_price=3000,
                      description='Meet and greet at the airport with the vehicle.')
    airport.custom_costs.append(PackageCustomCost(name='Child seat', price=500, is_optional=True))
    weekly = Package(name='Weekly Saver', type='WEEKLY', base_price=0, min_duration=7,
                     description='Seven days or more at the package rate.')
    db.session.add_all([airport, weekly])
    policy = Policy(name='fuel', title='Fuel Policy', category='FUEL', is_required=True,
                    content='Vehicles are handed over with a full tank and must be returned full.')
    policy.vehicles = vehicles
    db.session.add(policy)
    db.session.commit()
    logging.getLogger(__name__).info("demo data loaded")
