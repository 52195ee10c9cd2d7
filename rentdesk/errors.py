"""Error types raised by the rental services and their JSON rendering."""

from flask import jsonify
from werkzeug.exceptions import HTTPException


class RentalError(Exception):
    """Base class for errors reported back to the caller."""

    status_code = 400

    def __init__(self, message: str, status_code: int = None, **payload):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload

    def to_dict(self) -> dict:
        body = dict(self.payload)
        body['error'] = self.message
        return body


class ValidationError(RentalError):
    status_code = 400


class Unauthorized(RentalError):
    status_code = 401


class PermissionDenied(RentalError):
    status_code = 403


class NotFound(RentalError):
    status_code = 404


class Conflict(RentalError):
    status_code = 409


class IllegalTransition(RentalError):
    """An action was attempted from a status that does not allow it."""

    status_code = 409

    def __init__(self, action: str, current: str, message: str = None):
        message = message or f"Cannot {action} a booking in {current} status"
        super().__init__(message, action=action, current=current)
        self.action = action
        self.current = current


def register_error_handlers(app, db) -> None:
    """Render service errors and HTTP errors as JSON bodies."""

    @app.errorhandler(RentalError)
    def handle_rental_error(error):
        db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        db.session.rollback()
        return jsonify({'error': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        db.session.rollback()
        app.logger.exception("Unhandled error: %s", error)
        return jsonify({'error': 'Internal server error'}), 500
