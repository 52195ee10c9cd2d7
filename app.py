"""Vehicle rental desk.

A JSON service for a rental shop: customers browse the fleet and request
bookings, staff take each booking through confirmation, collection, return,
invoicing and payment.

To run the app locally:

    # Install the package and its dependencies
    pip install -e .

    # Initialise the database (add --seed for demo vehicles and users)
    python app.py --init-db --seed

    # Start the development server
    python app.py

The API is then available at http://localhost:5000/api/ and the back office
at http://localhost:5000/api/admin/.  Requests identify the acting user with
an ``X-User-Id`` header.
"""

import argparse

from rentdesk import create_app, init_db, seed_demo

app = create_app()


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Vehicle rental desk")
    parser.add_argument('--init-db', action='store_true', help='Initialise the database')
    parser.add_argument('--seed', action='store_true', help='Load demo vehicles and users')
    args = parser.parse_args()
    if args.init_db or args.seed:
        with app.app_context():
            init_db()
            if args.seed:
                seed_demo()
    else:
        app.run(debug=True)
