from datetime import datetime

import pytest

from rentdesk import create_app, init_db
from rentdesk.config import TestConfig
from rentdesk.models import Package, PackageCustomCost, User, Vehicle, db
from rentdesk.permissions import Actor

START = datetime(2026, 3, 1, 9, 0)
END = datetime(2026, 3, 4, 9, 0)


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        init_db()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def users(app):
    people = {
        'customer': User(name='Nimal Perera', email='nimal@example.com', phone='+94 77 555 0101'),
        'other': User(name='Kamala Silva', email='kamala@example.com'),
        'manager': User(name='Desk Manager', email='manager@example.com', role='MANAGER'),
        'admin': User(name='Office Admin', email='admin@example.com', role='ADMIN'),
        'root': User(name='Owner', email='owner@example.com', role='SUPER_ADMIN'),
    }
    db.session.add_all(people.values())
    db.session.commit()
    return people


@pytest.fixture
def vehicle(app):
    car = Vehicle(name='Toyota Axio', brand='Toyota', model='Axio', price_per_day=5000)
    db.session.add(car)
    db.session.commit()
    return car


@pytest.fixture
def second_vehicle(app):
    car = Vehicle(name='Suzuki Alto', brand='Suzuki', model='Alto', price_per_day=3000)
    db.session.add(car)
    db.session.commit()
    return car


@pytest.fixture
def airport_package(app):
    package = Package(name='Airport Pickup', type='AIRPORT_PICKUP', base_price=3000)
    package.custom_costs.append(PackageCustomCost(name='Meet and greet', price=1000))
    package.custom_costs.append(PackageCustomCost(name='Child seat', price=500, is_optional=True))
    db.session.add(package)
    db.session.commit()
    return package


def actor_for(user):
    return Actor.from_user(user)


def as_user(user):
    return {'X-User-Id': str(user.id)}
