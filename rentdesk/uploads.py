"""Storage for documents captured when a vehicle is collected.

Files are written to ``UPLOAD_FOLDER`` and served back by the ``/api/uploads``
route; the booking only keeps the URL.
"""

import os
import uuid

from werkzeug.utils import secure_filename

from .errors import ValidationError
from .models import utcnow


def allowed_file(filename: str, config) -> bool:
    ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
    return ext in config['ALLOWED_UPLOAD_EXTENSIONS']


def save_upload(file_obj, kind: str, config, now=None) -> dict:
    """Save an uploaded file and return the document fields for it."""
    if file_obj is None or not file_obj.filename:
        raise ValidationError("No file uploaded", field='file')
    original = secure_filename(file_obj.filename)
    if not original or not allowed_file(original, config):
        raise ValidationError("File type not allowed", field='file')
    os.makedirs(config['UPLOAD_FOLDER'], exist_ok=True)
    stamp = (now or utcnow()).timestamp()
    filename = f"{kind.lower()}_{stamp:.0f}_{uuid.uuid4().hex[:8]}_{original}"
    file_obj.save(os.path.join(config['UPLOAD_FOLDER'], filename))
    return {'type': kind, 'file_url': f"/api/uploads/{filename}", 'file_name': original}
