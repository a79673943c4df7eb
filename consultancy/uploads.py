"""Validated image uploads for the header logo and home hero image."""
import os
import uuid

from flask import current_app
from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

from .models import Media, db

UPLOAD_URL_PREFIX = '/api/uploads/'
IMAGE_EXTENSION_MIME_TYPES = {
    'png': {'image/png'},
    'jpg': {'image/jpeg'},
    'jpeg': {'image/jpeg'},
    'gif': {'image/gif'},
    'webp': {'image/webp'},
    'ico': {'image/x-icon', 'image/vnd.microsoft.icon'},
}


def safe_upload_path(stored_name):
    upload_root = os.path.abspath(current_app.config['UPLOAD_FOLDER'])
    raw_name = (stored_name or '').strip()
    safe_name = secure_filename(raw_name)
    if not safe_name or safe_name != raw_name:
        return None, None
    full_path = os.path.abspath(os.path.join(upload_root, safe_name))
    try:
        if os.path.commonpath([upload_root, full_path]) != upload_root:
            return None, None
    except ValueError:
        return None, None
    return safe_name, full_path


def validate_uploaded_file(file):
    """Return an error message, or None when the file is an acceptable image."""
    if not file or not file.filename:
        return 'No file was uploaded.'

    filename = secure_filename(file.filename)
    if not filename or len(filename) > 180 or '.' not in filename:
        return 'Invalid file name.'

    extension = filename.rsplit('.', 1)[1].lower()
    mime_type = (file.mimetype or '').split(';', 1)[0].lower()
    allowed_mimes = current_app.config.get('ALLOWED_UPLOAD_MIME_TYPES', set())
    if (
        extension not in IMAGE_EXTENSION_MIME_TYPES
        or mime_type not in allowed_mimes
        or mime_type not in IMAGE_EXTENSION_MIME_TYPES[extension]
    ):
        return 'Only PNG, JPEG, GIF, WebP or ICO images are allowed.'

    max_pixels = max(1, int(current_app.config.get('MAX_UPLOAD_IMAGE_PIXELS', 40_000_000)))
    file.stream.seek(0)
    try:
        with Image.open(file.stream) as image:
            width, height = image.size
            if width < 1 or height < 1 or (width * height) > max_pixels:
                return 'Image dimensions are not allowed.'
            image.verify()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError):
        return 'File is not a valid image.'
    finally:
        file.stream.seek(0)
    return None


def save_upload(file):
    """Store a validated upload and return its public URL path."""
    filename = secure_filename(file.filename)
    unique_name = f"{uuid.uuid4().hex[:16]}_{filename}"
    full_path = os.path.join(current_app.config['UPLOAD_FOLDER'], unique_name)
    file.save(full_path)
    media = Media(
        filename=filename,
        file_path=unique_name,
        file_size=os.path.getsize(full_path),
        mime_type=(file.mimetype or ''),
    )
    db.session.add(media)
    db.session.commit()
    return UPLOAD_URL_PREFIX + unique_name


def delete_upload(url):
    """Remove a previously stored upload; URLs that are not local uploads are ignored."""
    if not url or not str(url).startswith(UPLOAD_URL_PREFIX):
        return False
    safe_name, full_path = safe_upload_path(str(url)[len(UPLOAD_URL_PREFIX):])
    if not safe_name:
        return False
    media = Media.query.filter_by(file_path=safe_name).first()
    if media is not None:
        db.session.delete(media)
        db.session.commit()
    if os.path.exists(full_path):
        os.remove(full_path)
        return True
    return False
