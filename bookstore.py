import csv
import io
import math
import os
import re
import secrets
from datetime import date, datetime, timedelta, timezone
from functools import wraps

from flask import Flask, Response, jsonify, request
from flask_sqlalchemy import SQLAlchemy
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import String, case, cast, func
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException


db = SQLAlchemy()

BOOK_TYPES = ("ebook", "audiobook")
AUDIO_QUALITIES = ("Standard", "High", "Lossless")
ROLES = ("user", "admin")
PURCHASE_STATUSES = ("completed", "cancelled")
PAYMENT_METHODS = ("credit_card", "debit_card", "wallet")
DOWNLOAD_TYPES = ("free", "purchased")
WISHLIST_PRIORITIES = ("low", "medium", "high")
REPORT_REASONS = ("spam", "inappropriate", "offensive", "off-topic", "other")
REPORT_TARGETS = ("review", "reply")
VOTES = ("like", "dislike")
THEMES = ("light", "dark", "system")
NOTIFICATION_TYPES = ("system", "purchase", "download", "review", "promotion", "wishlist", "security")
NOTIFICATION_PRIORITIES = ("low", "medium", "high", "critical")
DEFAULT_ACTION_TEXT = {
    "wishlist": "Check Wishlist",
    "purchase": "View Purchase",
    "download": "Download Again",
    "review": "See Review",
    "promotion": "Claim Offer",
}
GRANULARITY_FORMATS = {
    "hourly": "%Y-%m-%d %H:00",
    "daily": "%Y-%m-%d",
    "weekly": "%Y-%U",
    "monthly": "%Y-%m",
}
SALES_PERIODS = {"7days": 7, "30days": 30, "90days": 90, "year": 365}
AUDIO_LENGTH_PATTERN = re.compile(r"^([0-9]{1,2}:)?[0-9]{1,2}:[0-9]{2}$")
IDENTITY_SALT = "identity-token"

REVIEW_COMMENT_MAX = 2000
REPLY_COMMENT_MAX = 1000


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands timestamps back without tzinfo; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def empty_distribution():
    return {str(star): 0 for star in range(1, 6)}


def default_preferences():
    return {
        "notifications": {"email": True, "push": True},
        "language": "en",
        "theme": "system",
    }


def as_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    identity_uid = db.Column(db.String(128), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    display_name = db.Column(db.String(255), nullable=False)
    photo_url = db.Column(db.String(500), nullable=False, default="")
    phone_number = db.Column(db.String(64), nullable=False, default="")
    role = db.Column(db.String(20), nullable=False, default="user")
    email_verified = db.Column(db.Boolean, nullable=False, default=False)
    is_suspended = db.Column(db.Boolean, nullable=False, default=False)
    total_spent = db.Column(db.Float, nullable=False, default=0.0)
    preferences = db.Column(db.JSON, nullable=False, default=default_preferences)
    reading_history = db.Column(db.JSON, nullable=False, default=list)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Book(db.Model):
    __tablename__ = "books"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False, index=True)
    author = db.Column(db.String(255), nullable=False, index=True)
    publisher = db.Column(db.String(255), nullable=False)
    publication_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.Text, nullable=False)
    genre = db.Column(db.String(120), nullable=False, index=True)
    language = db.Column(db.String(64), nullable=False, default="English")
    isbn = db.Column(db.String(32), unique=True, nullable=False, index=True)
    trending = db.Column(db.Boolean, nullable=False, default=False)
    cover_image = db.Column(db.String(500), nullable=False)
    type = db.Column(db.String(20), nullable=False, default="ebook", index=True)
    pages = db.Column(db.Integer, nullable=True)
    audio_length = db.Column(db.String(16), nullable=True)
    narrators = db.Column(db.JSON, nullable=True)
    audio_sample_url = db.Column(db.String(500), nullable=True)
    audio_quality = db.Column(db.String(20), nullable=True)
    file_url = db.Column(db.String(500), nullable=False)
    file_size = db.Column(db.BigInteger, nullable=False, default=0)
    file_format = db.Column(db.String(20), nullable=False, default="PDF")
    price = db.Column(db.Float, nullable=False, default=0.0, index=True)
    max_downloads = db.Column(db.Integer, nullable=False, default=3)
    validity_hours = db.Column(db.Integer, nullable=False, default=24)
    allow_multiple_devices = db.Column(db.Boolean, nullable=False, default=True)
    preview_enabled = db.Column(db.Boolean, nullable=False, default=True)
    preview_pages = db.Column(db.Integer, nullable=False, default=20)
    sample_minutes = db.Column(db.Integer, nullable=False, default=5)
    rating_average = db.Column(db.Float, nullable=False, default=0.0, index=True)
    rating_count = db.Column(db.Integer, nullable=False, default=0)
    rating_distribution = db.Column(db.JSON, nullable=False, default=empty_distribution)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Purchase(db.Model):
    __tablename__ = "purchases"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    book_id = db.Column(db.Integer, nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="completed", index=True)
    payment_method = db.Column(db.String(20), nullable=False, default="credit_card")
    order_ref = db.Column(db.String(64), nullable=False, index=True)
    downloads_used = db.Column(db.Integer, nullable=False, default=0)
    max_downloads = db.Column(db.Integer, nullable=False, default=3)
    download_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    purchased_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_downloaded_at = db.Column(db.DateTime(timezone=True), nullable=True)


class Review(db.Model):
    __tablename__ = "reviews"
    __table_args__ = (db.UniqueConstraint("user_id", "book_id", name="uq_review_user_book"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    book_id = db.Column(db.Integer, nullable=False, index=True)
    rating = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(200), nullable=True)
    comment = db.Column(db.Text, nullable=False)
    likes = db.Column(db.JSON, nullable=False, default=list)
    dislikes = db.Column(db.JSON, nullable=False, default=list)
    replies = db.Column(db.JSON, nullable=False, default=list)
    reports = db.Column(db.JSON, nullable=False, default=list)
    report_count = db.Column(db.Integer, nullable=False, default=0, index=True)
    is_hidden = db.Column(db.Boolean, nullable=False, default=False, index=True)
    hidden_reason = db.Column(db.String(255), nullable=True)
    hidden_by = db.Column(db.Integer, nullable=True)
    hidden_at = db.Column(db.DateTime(timezone=True), nullable=True)
    edited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class WishlistEntry(db.Model):
    __tablename__ = "wishlist"
    __table_args__ = (db.UniqueConstraint("user_id", "book_id", name="uq_wishlist_user_book"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    book_id = db.Column(db.Integer, nullable=False, index=True)
    notes = db.Column(db.String(500), nullable=False, default="")
    priority = db.Column(db.String(20), nullable=False, default="medium")
    added_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class DownloadRecord(db.Model):
    __tablename__ = "downloads"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    book_id = db.Column(db.Integer, nullable=False, index=True)
    download_type = db.Column(db.String(20), nullable=False)
    purchase_id = db.Column(db.Integer, nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    downloaded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    type = db.Column(db.String(20), nullable=False, default="system")
    title = db.Column(db.String(100), nullable=False)
    message = db.Column(db.String(500), nullable=False)
    data = db.Column(db.JSON, nullable=False, default=dict)
    action_link = db.Column(db.String(500), nullable=True)
    action_text = db.Column(db.String(30), nullable=True)
    priority = db.Column(db.String(20), nullable=False, default="medium")
    is_read = db.Column(db.Boolean, nullable=False, default=False, index=True)
    is_pinned = db.Column(db.Boolean, nullable=False, default=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    admin_user_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(255), nullable=False)
    ip_address = db.Column(db.String(64), nullable=True)
    device_info = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class ErrorLog(db.Model):
    __tablename__ = "error_logs"

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(120), nullable=False, default="system")
    severity = db.Column(db.String(20), nullable=False, default="error")
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


BOOK_SORT_FIELDS = {
    "title": Book.title,
    "author": Book.author,
    "price": Book.price,
    "created_at": Book.created_at,
    "rating": Book.rating_average,
    "pages": Book.pages,
    "audio_length": Book.audio_length,
}


class InvalidIdentityToken(Exception):
    def __init__(self, message, code="INVALID_TOKEN"):
        super().__init__(message)
        self.code = code


def issue_identity_token(secret_key, claims):
    return URLSafeTimedSerializer(secret_key, salt=IDENTITY_SALT).dumps(claims)


def format_price(price):
    if not price:
        return "Free"
    return f"${price:.2f}"


def format_audio_length(value):
    if not value:
        return ""
    try:
        parts = [int(p) for p in value.split(":")]
    except ValueError:
        return value
    hours = minutes = seconds = 0
    if len(parts) == 3:
        hours, minutes, seconds = parts
    elif len(parts) == 2:
        minutes, seconds = parts
    pieces = []
    if hours > 0:
        pieces.append(f"{hours} hr")
    if minutes > 0:
        pieces.append(f"{minutes} min")
    if not pieces:
        return f"{seconds} sec"
    return " ".join(pieces)


def format_file_size(size):
    if not size:
        return "0 B"
    units = ["bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.1f} {units[index]}"


def narrator_names(book):
    return [n.get("name") for n in (book.narrators or []) if n.get("name")]


def preview_note(book):
    if book.type == "audiobook":
        return f"{book.sample_minutes or 5} minute sample available"
    return f"First {book.preview_pages or 20} pages available in preview"


def preview_content(book):
    if book.type == "audiobook":
        return {
            "sample_url": book.audio_sample_url,
            "duration_minutes": book.sample_minutes,
            "note": preview_note(book),
            "narrators": ", ".join(narrator_names(book)),
            "length": format_audio_length(book.audio_length),
        }
    return {
        "preview_url": book.file_url,
        "pages": book.preview_pages,
        "note": preview_note(book),
    }


def download_file_name(book):
    stem = re.sub(r"[^a-z0-9]", "_", book.title or "book", flags=re.IGNORECASE)
    return f"{stem}.{(book.file_format or 'pdf').lower()}"


def book_summary(book):
    if book is None:
        return None
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "cover_image": book.cover_image,
        "price": book.price,
        "type": book.type,
    }


def book_to_dict(book):
    payload = {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "publisher": book.publisher,
        "publication_date": book.publication_date.isoformat() if book.publication_date else None,
        "description": book.description,
        "genre": book.genre,
        "language": book.language,
        "isbn": book.isbn,
        "trending": book.trending,
        "cover_image": book.cover_image,
        "type": book.type,
        "price": book.price,
        "price_display": format_price(book.price),
        "is_premium": (book.price or 0) > 0,
        "file_url": book.file_url,
        "file_size": book.file_size,
        "formatted_file_size": format_file_size(book.file_size),
        "file_format": book.file_format,
        "download_policy": {
            "max_downloads": book.max_downloads,
            "validity_hours": book.validity_hours,
            "allow_multiple_devices": book.allow_multiple_devices,
        },
        "preview": {
            "enabled": book.preview_enabled,
            "pages": book.preview_pages,
            "sample_minutes": book.sample_minutes,
            "note": preview_note(book),
        },
        "rating_stats": {
            "average": book.rating_average,
            "count": book.rating_count,
            "distribution": book.rating_distribution or empty_distribution(),
        },
        "created_at": isoformat(book.created_at),
        "updated_at": isoformat(book.updated_at),
    }
    if book.type == "audiobook":
        payload.update(
            {
                "audio_length": book.audio_length,
                "formatted_audio_length": format_audio_length(book.audio_length),
                "narrators": narrator_names(book),
                "narrators_list": ", ".join(narrator_names(book)),
                "audio_sample_url": book.audio_sample_url,
                "audio_quality": book.audio_quality,
            }
        )
    else:
        payload["pages"] = book.pages
    return payload


def user_summary(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return {"id": user_id, "display_name": "Deleted user", "photo_url": ""}
    return {"id": user.id, "display_name": user.display_name, "photo_url": user.photo_url}


def user_to_dict(user, admin_view=False):
    payload = {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "photo_url": user.photo_url,
        "phone_number": user.phone_number,
        "role": user.role,
        "email_verified": user.email_verified,
        "total_spent": round(user.total_spent or 0, 2),
        "preferences": user.preferences or default_preferences(),
        "last_login_at": isoformat(user.last_login_at),
        "created_at": isoformat(user.created_at),
    }
    if admin_view:
        payload["identity_uid"] = user.identity_uid
        payload["is_suspended"] = user.is_suspended
    return payload


def purchase_to_dict(purchase, book=None, include_book=True):
    payload = {
        "id": purchase.id,
        "user_id": purchase.user_id,
        "book_id": purchase.book_id,
        "amount": purchase.amount,
        "status": purchase.status,
        "payment_method": purchase.payment_method,
        "order_ref": purchase.order_ref,
        "download_tracking": {
            "downloads_used": purchase.downloads_used,
            "max_downloads": purchase.max_downloads,
            "download_expires_at": isoformat(purchase.download_expires_at),
        },
        "purchased_at": isoformat(purchase.purchased_at),
        "cancelled_at": isoformat(purchase.cancelled_at),
        "last_downloaded_at": isoformat(purchase.last_downloaded_at),
    }
    if include_book:
        payload["book"] = book_summary(book if book is not None else db.session.get(Book, purchase.book_id))
    return payload


def reply_to_dict(reply, viewer_id=None):
    payload = {
        "id": reply["id"],
        "user": user_summary(reply["user_id"]),
        "comment": reply["comment"],
        "likes": len(reply.get("likes") or []),
        "dislikes": len(reply.get("dislikes") or []),
        "created_at": reply.get("created_at"),
    }
    if viewer_id is not None:
        payload["user_vote"] = vote_state(reply.get("likes"), reply.get("dislikes"), viewer_id)
    return payload


def review_to_dict(review, viewer_id=None, moderation=False):
    payload = {
        "id": review.id,
        "book_id": review.book_id,
        "user": user_summary(review.user_id),
        "rating": review.rating,
        "title": review.title,
        "comment": review.comment,
        "likes": len(review.likes or []),
        "dislikes": len(review.dislikes or []),
        "replies": [reply_to_dict(r, viewer_id) for r in (review.replies or [])],
        "report_count": review.report_count,
        "is_hidden": review.is_hidden,
        "edited_at": isoformat(review.edited_at),
        "created_at": isoformat(review.created_at),
        "updated_at": isoformat(review.updated_at),
    }
    if viewer_id is not None:
        payload["user_vote"] = vote_state(review.likes, review.dislikes, viewer_id)
        payload["has_reported"] = any(r.get("user_id") == viewer_id for r in (review.reports or []))
    if moderation:
        payload.update(
            {
                "reports": review.reports or [],
                "hidden_reason": review.hidden_reason,
                "hidden_by": review.hidden_by,
                "hidden_at": isoformat(review.hidden_at),
            }
        )
    return payload


def wishlist_to_dict(entry):
    book = db.session.get(Book, entry.book_id)
    payload = {
        "id": entry.id,
        "book_id": entry.book_id,
        "notes": entry.notes,
        "priority": entry.priority,
        "added_at": isoformat(entry.added_at),
        "book": book_summary(book),
    }
    if book is not None:
        payload["book"]["rating_stats"] = {"average": book.rating_average, "count": book.rating_count}
        payload["book"]["file_url"] = book.file_url
    return payload


def download_to_dict(record):
    return {
        "id": record.id,
        "book_id": record.book_id,
        "download_type": record.download_type,
        "purchase_id": record.purchase_id,
        "downloaded_at": isoformat(record.downloaded_at),
        "book": book_summary(db.session.get(Book, record.book_id)),
    }


def notification_to_dict(row):
    return {
        "id": row.id,
        "type": row.type,
        "title": row.title,
        "message": row.message,
        "data": row.data or {},
        "action_link": row.action_link,
        "action_text": row.action_text,
        "priority": row.priority,
        "is_read": row.is_read,
        "is_pinned": row.is_pinned,
        "expires_at": isoformat(row.expires_at),
        "created_at": isoformat(row.created_at),
    }


def pagination_payload(page, limit, total):
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
        "has_next": page * limit < total,
        "has_previous": page > 1,
    }


def vote_state(likes, dislikes, user_id):
    if user_id in (likes or []):
        return "like"
    if user_id in (dislikes or []):
        return "dislike"
    return None


def toggle_vote(likes, dislikes, user_id, vote):
    """Flip ``user_id`` in the chosen set and drop it from the opposite one.

    Returns the new ``(likes, dislikes, state)``; ``state`` is ``None`` when the
    vote was withdrawn.
    """
    likes = list(likes or [])
    dislikes = list(dislikes or [])
    chosen, opposite = (likes, dislikes) if vote == "like" else (dislikes, likes)
    if user_id in chosen:
        chosen.remove(user_id)
        return likes, dislikes, None
    chosen.append(user_id)
    if user_id in opposite:
        opposite.remove(user_id)
    return likes, dislikes, vote


def scrub_user_activity(review, user_id):
    """Drop ``user_id``'s votes, replies and reports from someone else's review.

    Reports that pointed at a removed reply go with it. Returns True when
    anything changed.
    """
    removed_replies = {r["id"] for r in (review.replies or []) if r["user_id"] == user_id}
    likes = [uid for uid in (review.likes or []) if uid != user_id]
    dislikes = [uid for uid in (review.dislikes or []) if uid != user_id]
    replies = [
        dict(
            r,
            likes=[uid for uid in (r.get("likes") or []) if uid != user_id],
            dislikes=[uid for uid in (r.get("dislikes") or []) if uid != user_id],
        )
        for r in (review.replies or [])
        if r["id"] not in removed_replies
    ]
    reports = [
        r
        for r in (review.reports or [])
        if r.get("user_id") != user_id and r.get("reply_id") not in removed_replies
    ]
    changed = (
        likes != (review.likes or [])
        or dislikes != (review.dislikes or [])
        or replies != (review.replies or [])
        or reports != (review.reports or [])
    )
    if changed:
        review.likes = likes
        review.dislikes = dislikes
        review.replies = replies
        review.reports = reports
        review.report_count = len(reports)
    return changed


def compute_rating_stats(ratings):
    distribution = empty_distribution()
    for rating in ratings:
        distribution[str(rating)] += 1
    count = len(ratings)
    average = math.floor(sum(ratings) / count * 10 + 0.5) / 10 if count else 0.0
    return {"average": average, "count": count, "distribution": distribution}


def refresh_rating_stats(book_id):
    book = db.session.get(Book, book_id)
    if book is None:
        return None
    ratings = [
        rating
        for (rating,) in db.session.query(Review.rating)
        .filter(Review.book_id == book_id, Review.is_hidden.is_(False))
        .all()
    ]
    stats = compute_rating_stats(ratings)
    book.rating_average = stats["average"]
    book.rating_count = stats["count"]
    book.rating_distribution = stats["distribution"]
    return stats


def check_download_eligibility(book, purchase, now=None):
    now = now or utcnow()
    if not book.price:
        return {"allowed": True, "reason": "free", "is_free": True, "remaining": None, "expires_at": None}
    if purchase is None or purchase.status != "completed":
        return {
            "allowed": False,
            "reason": "purchase_required",
            "is_free": False,
            "message": "You need to purchase this book to download it",
        }
    remaining = max(purchase.max_downloads - purchase.downloads_used, 0)
    expires_at = as_utc(purchase.download_expires_at)
    if remaining <= 0:
        return {
            "allowed": False,
            "reason": "max_downloads_reached",
            "is_free": False,
            "message": f"You have reached the maximum download limit ({purchase.max_downloads})",
            "remaining": 0,
            "expires_at": isoformat(expires_at),
        }
    if expires_at is not None and now > expires_at:
        return {
            "allowed": False,
            "reason": "download_window_expired",
            "is_free": False,
            "message": f"Download window expired. You must download within {book.validity_hours} hours of purchase.",
            "remaining": remaining,
            "expires_at": isoformat(expires_at),
        }
    return {
        "allowed": True,
        "reason": "purchased",
        "is_free": False,
        "remaining": remaining,
        "expires_at": isoformat(expires_at),
    }


def price_filter_clause(raw):
    raw = (raw or "").strip().lower()
    if not raw:
        return None
    if raw == "free":
        return Book.price == 0
    if raw == "premium":
        return Book.price > 0
    low, _, high = raw.partition("-")
    try:
        low, high = float(low), float(high)
    except ValueError:
        return None
    return Book.price.between(low, high)


def bucket_key(value, granularity):
    return as_utc(value).strftime(GRANULARITY_FORMATS.get(granularity, "%Y-%m-%d"))


def _parse_int(raw):
    if isinstance(raw, bool):
        raise TypeError("booleans are not integers")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise ValueError("non-integral number")
        return int(raw)
    return int(raw)


def _coerce_int(data, field, errors, low=None, high=None):
    try:
        value = _parse_int(data.get(field))
    except (TypeError, ValueError):
        errors[field] = "Must be an integer."
        return None
    if low is not None and value < low or high is not None and value > high:
        if high is None:
            errors[field] = f"Must be at least {low}."
        else:
            errors[field] = f"Must be between {low} and {high}."
        return None
    return value


def _coerce_str(data, field, errors, required=False, max_length=None):
    """Return the stripped string for ``field`` or ``None`` after recording an error.

    A missing or null value counts as an empty string.
    """
    raw = data.get(field)
    if raw is None:
        raw = ""
    if not isinstance(raw, str):
        errors[field] = "Must be a string."
        return None
    value = raw.strip()
    if required and not value:
        errors[field] = "This field is required."
        return None
    if max_length is not None and len(value) > max_length:
        errors[field] = f"Must be at most {max_length} characters."
        return None
    return value


def _parse_narrators(raw):
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return None
    names = []
    for item in raw:
        name = item.get("name") if isinstance(item, dict) else item
        if isinstance(name, str) and name.strip():
            names.append({"name": name.strip()})
    return names


BOOK_TEXT_FIELDS = ("title", "author", "publisher", "description", "genre", "isbn")
BOOK_REQUIRED_FIELDS = BOOK_TEXT_FIELDS + ("publication_date", "cover_image", "file_url", "price")


def validate_book_payload(data, cdn_prefix, book=None):
    """Validate a create (``book`` is None) or partial update payload.

    Returns ``(values, errors)``; ``errors`` maps field names to messages.
    """
    values = {}
    errors = {}
    partial = book is not None

    for field in BOOK_REQUIRED_FIELDS:
        if field not in data:
            if not partial:
                errors[field] = "This field is required."
            continue
        raw = data.get(field)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            errors[field] = "This field is required."
            continue
        if field == "isbn" and isinstance(raw, int) and not isinstance(raw, bool):
            raw = str(raw)
        if field != "price" and not isinstance(raw, str):
            errors[field] = "Must be a string."
            continue
        if field in BOOK_TEXT_FIELDS:
            values[field] = raw.strip()
        elif field == "publication_date":
            try:
                values[field] = date.fromisoformat(raw.strip()[:10])
            except ValueError:
                errors[field] = "Must be an ISO-8601 date."
        elif field == "cover_image":
            if not raw.startswith("http"):
                errors[field] = "Cover image must be an http(s) URL."
            else:
                values[field] = raw.strip()
        elif field == "file_url":
            if not raw.startswith(cdn_prefix):
                errors[field] = f"File URL must be hosted under {cdn_prefix}"
            else:
                values[field] = raw.strip()
        elif field == "price":
            try:
                if isinstance(raw, bool):
                    raise TypeError("booleans are not prices")
                price = float(raw)
            except (TypeError, ValueError):
                errors[field] = "Must be a number."
                continue
            if not math.isfinite(price) or price < 0:
                errors[field] = "Must be at least 0."
            else:
                values[field] = round(price, 2)

    if "language" in data:
        language = _coerce_str(data, "language", errors, max_length=64)
        if language is not None:
            values["language"] = language or "English"
    if "trending" in data:
        values["trending"] = as_bool(data.get("trending"))

    if "type" in data:
        if data.get("type") not in BOOK_TYPES:
            errors["type"] = f"Must be one of: {', '.join(BOOK_TYPES)}."
        else:
            values["type"] = data.get("type")
    elif not partial:
        values["type"] = "ebook"

    book_type = values.get("type") or (book.type if partial else "ebook")
    type_changed = partial and book_type != book.type
    needs_type_fields = not partial or type_changed

    if book_type == "ebook":
        if "pages" in data or needs_type_fields:
            if data.get("pages") in (None, ""):
                errors["pages"] = "This field is required for ebooks."
            else:
                pages = _coerce_int(data, "pages", errors, low=1)
                if pages is not None:
                    values["pages"] = pages
        if needs_type_fields:
            values["file_format"] = "PDF"
            if type_changed:
                values.update({"audio_length": None, "narrators": None, "audio_sample_url": None, "audio_quality": None})
    elif book_type == "audiobook":
        if "audio_length" in data or needs_type_fields:
            length = str(data.get("audio_length") or "").strip()
            if not length:
                errors["audio_length"] = "This field is required for audiobooks."
            elif not AUDIO_LENGTH_PATTERN.match(length):
                errors["audio_length"] = "Audio length must be in format HH:MM:SS or MM:SS."
            else:
                values["audio_length"] = length
        if "narrators" in data or needs_type_fields:
            narrators = _parse_narrators(data.get("narrators"))
            if not narrators:
                errors["narrators"] = "At least one narrator is required for audiobooks."
            else:
                values["narrators"] = narrators
        if "audio_sample_url" in data:
            sample = _coerce_str(data, "audio_sample_url", errors)
            if sample and not sample.startswith(cdn_prefix):
                errors["audio_sample_url"] = f"Audio sample must be hosted under {cdn_prefix}"
            elif sample is not None:
                values["audio_sample_url"] = sample or None
        if "audio_quality" in data:
            if data.get("audio_quality") not in AUDIO_QUALITIES:
                errors["audio_quality"] = f"Must be one of: {', '.join(AUDIO_QUALITIES)}."
            else:
                values["audio_quality"] = data.get("audio_quality")
        elif needs_type_fields:
            values["audio_quality"] = "Standard"
        if needs_type_fields:
            values["file_format"] = "MP3"
            if type_changed:
                values["pages"] = None

    if "file_size" in data:
        size = _coerce_int(data, "file_size", errors, low=0)
        if size is not None:
            values["file_size"] = size
    if "max_downloads" in data:
        value = _coerce_int(data, "max_downloads", errors, low=1)
        if value is not None:
            values["max_downloads"] = value
    if "validity_hours" in data:
        value = _coerce_int(data, "validity_hours", errors, low=1, high=168)
        if value is not None:
            values["validity_hours"] = value
    if "preview_pages" in data:
        value = _coerce_int(data, "preview_pages", errors, low=1, high=50)
        if value is not None:
            values["preview_pages"] = value
    if "sample_minutes" in data:
        value = _coerce_int(data, "sample_minutes", errors, low=1, high=30)
        if value is not None:
            values["sample_minutes"] = value
    if "allow_multiple_devices" in data:
        values["allow_multiple_devices"] = as_bool(data.get("allow_multiple_devices"), True)
    if "preview_enabled" in data:
        values["preview_enabled"] = as_bool(data.get("preview_enabled"), True)

    return values, errors


def validate_notification_payload(data):
    values = {}
    errors = {}
    title = _coerce_str(data, "title", errors, required=True, max_length=100)
    message = _coerce_str(data, "message", errors, required=True, max_length=500)
    action_link = _coerce_str(data, "action_link", errors)
    kind = data.get("type") or "system"
    if kind not in NOTIFICATION_TYPES:
        errors["type"] = f"Must be one of: {', '.join(NOTIFICATION_TYPES)}."
    priority = data.get("priority") or "medium"
    if priority not in NOTIFICATION_PRIORITIES:
        errors["priority"] = f"Must be one of: {', '.join(NOTIFICATION_PRIORITIES)}."
    expires_at = None
    if data.get("expires_in_hours") not in (None, ""):
        hours = _coerce_int(data, "expires_in_hours", errors, low=1)
        if hours is not None:
            expires_at = utcnow() + timedelta(hours=hours)
    values.update(
        {
            "title": title,
            "message": message,
            "type": kind,
            "priority": priority,
            "action_link": action_link or None,
            "expires_at": expires_at,
        }
    )
    return values, errors


def create_app(config=None):
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", "sqlite:///bookstore.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))
    app.config["IDENTITY_TOKEN_TTL_SECONDS"] = int(os.getenv("IDENTITY_TOKEN_TTL_SECONDS", "3600"))
    app.config["IDENTITY_VERIFIER"] = None
    app.config["ADMIN_EMAILS"] = [
        e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "admin@ebookstore.com").split(",") if e.strip()
    ]
    app.config["CDN_URL_PREFIX"] = os.getenv("CDN_URL_PREFIX", "https://res.cloudinary.com/")
    app.config["ENABLE_DEV_TOKENS"] = os.getenv("ENABLE_DEV_TOKENS", "false").lower() == "true"
    app.config["DEFAULT_PAGE_SIZE"] = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    app.config["MAX_PAGE_SIZE"] = int(os.getenv("MAX_PAGE_SIZE", "100"))
    app.config["READING_HISTORY_LIMIT"] = int(os.getenv("READING_HISTORY_LIMIT", "50"))
    app.config["NOTIFICATION_RETENTION_DAYS"] = int(os.getenv("NOTIFICATION_RETENTION_DAYS", "30"))
    if config:
        app.config.update(config)

    db.init_app(app)

    with app.app_context():
        db.create_all()

    identity_serializer = URLSafeTimedSerializer(app.config["SECRET_KEY"], salt=IDENTITY_SALT)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({"error": exc.description or exc.name}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        try:
            db.session.add(ErrorLog(source=request.path[:120], severity="error", message=f"{type(exc).__name__}: {exc}"))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            app.logger.error("Could not record error log entry for %s", request.path)
        return jsonify({"error": "Internal server error"}), 500

    @app.after_request
    def add_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        return response

    def get_client_ip():
        forwarded = request.headers.get("X-Forwarded-For")
        return forwarded.split(",")[0].strip() if forwarded else (request.remote_addr or "unknown")

    def as_data():
        payload = request.get_json(silent=True)
        if isinstance(payload, dict):
            return payload
        return request.form

    def validation_error(errors):
        return jsonify({"error": "Validation failed", "fields": errors}), 400

    def not_found(message):
        return jsonify({"error": message}), 404

    def auth_error(message, code, status=401):
        return jsonify({"error": message, "code": code}), status

    def page_args():
        page = max(request.args.get("page", 1, type=int), 1)
        limit = request.args.get("limit", app.config["DEFAULT_PAGE_SIZE"], type=int)
        limit = min(max(limit, 1), app.config["MAX_PAGE_SIZE"])
        return page, limit

    def paginate(query, page, limit):
        total = query.order_by(None).count()
        items = query.offset((page - 1) * limit).limit(limit).all()
        return items, total

    def require_int(data, field):
        raw = data.get(field)
        if raw in (None, ""):
            return None, {field: "This field is required."}
        try:
            return _parse_int(raw), None
        except (TypeError, ValueError):
            return None, {field: "Must be an integer."}

    def log_admin_action(admin_id, action):
        db.session.add(
            AuditLog(
                admin_user_id=admin_id,
                action=action,
                ip_address=get_client_ip(),
                device_info=request.user_agent.string if request.user_agent else None,
            )
        )
        db.session.commit()

    def notify(user_id, kind, title, message, data=None, action_link=None, priority="medium", expires_at=None):
        row = Notification(
            user_id=user_id,
            type=kind,
            title=title[:100],
            message=message[:500],
            data=data or {},
            action_link=action_link,
            action_text=DEFAULT_ACTION_TEXT.get(kind, "View Details"),
            priority=priority,
            expires_at=expires_at,
        )
        db.session.add(row)
        return row

    def verify_identity_token(raw):
        verifier = app.config.get("IDENTITY_VERIFIER")
        if verifier is not None:
            return verifier(raw)
        try:
            claims = identity_serializer.loads(raw, max_age=app.config["IDENTITY_TOKEN_TTL_SECONDS"])
        except SignatureExpired:
            raise InvalidIdentityToken("Token has expired. Please login again.", code="TOKEN_EXPIRED")
        except BadSignature:
            raise InvalidIdentityToken("Invalid authentication token.")
        if not isinstance(claims, dict) or not claims.get("uid"):
            raise InvalidIdentityToken("Invalid authentication token.")
        return claims

    def sign_in(claims):
        email = (claims.get("email") or "").strip().lower()
        user = User.query.filter_by(identity_uid=claims["uid"]).first()
        if not user:
            user = User(
                identity_uid=claims["uid"],
                email=email,
                display_name=claims.get("name") or (email.split("@")[0] if email else "User"),
                photo_url=claims.get("picture") or "",
                phone_number=claims.get("phone_number") or "",
                email_verified=bool(claims.get("email_verified")),
                role="admin" if email and email in app.config["ADMIN_EMAILS"] else "user",
                last_login_at=utcnow(),
            )
            db.session.add(user)
            db.session.commit()
            app.logger.info("New user created: %s", user.email)
            return user
        user.last_login_at = utcnow()
        if email:
            user.email = email
        if claims.get("name"):
            user.display_name = claims["name"]
        if claims.get("picture"):
            user.photo_url = claims["picture"]
        if claims.get("phone_number"):
            user.phone_number = claims["phone_number"]
        user.email_verified = bool(claims.get("email_verified", user.email_verified))
        db.session.commit()
        return user

    def authenticate():
        header = request.headers.get("Authorization") or ""
        if not header:
            return None, auth_error("Access denied. No token provided.", "NO_TOKEN")
        if not header.startswith("Bearer ") or not header[len("Bearer "):].strip():
            return None, auth_error("Access denied. Invalid token format.", "INVALID_TOKEN_FORMAT")
        try:
            claims = verify_identity_token(header[len("Bearer "):].strip())
        except InvalidIdentityToken as exc:
            return None, auth_error(str(exc), exc.code)
        return sign_in(claims), None

    def get_optional_user():
        if not request.headers.get("Authorization"):
            return None
        user, error = authenticate()
        if error or user.is_suspended:
            return None
        return user

    def require_auth(role=None):
        def decorator(fn):
            @wraps(fn)
            def wrapped(*args, **kwargs):
                user, error = authenticate()
                if error:
                    return error
                if user.is_suspended:
                    return auth_error("Account suspended", "ACCOUNT_SUSPENDED", 403)
                if role and user.role != role:
                    return auth_error("Forbidden", "FORBIDDEN", 403)
                request.current_user = user
                return fn(*args, **kwargs)

            return wrapped

        return decorator

    def completed_purchase(user_id, book_id):
        return (
            Purchase.query.filter_by(user_id=user_id, book_id=book_id, status="completed")
            .order_by(Purchase.purchased_at.desc())
            .first()
        )

    def cancel_purchase(purchase):
        purchase.status = "cancelled"
        purchase.cancelled_at = utcnow()
        owner = db.session.get(User, purchase.user_id)
        if owner:
            owner.total_spent = max(round((owner.total_spent or 0) - purchase.amount, 2), 0.0)
        return owner

    def remove_user_data(user):
        reviewed_books = {r.book_id for r in Review.query.filter_by(user_id=user.id).all()}
        Review.query.filter_by(user_id=user.id).delete()
        WishlistEntry.query.filter_by(user_id=user.id).delete()
        Notification.query.filter_by(user_id=user.id).delete()
        DownloadRecord.query.filter_by(user_id=user.id).delete()
        for review in Review.query.all():
            scrub_user_activity(review, user.id)
        for book_id in reviewed_books:
            refresh_rating_stats(book_id)
        db.session.delete(user)

    def user_purchase_stats(user_id):
        count, total = (
            db.session.query(func.count(Purchase.id), func.coalesce(func.sum(Purchase.amount), 0))
            .filter(Purchase.user_id == user_id, Purchase.status == "completed")
            .one()
        )
        return {"count": int(count), "total": round(float(total), 2)}

    def purchases_by_type(*criteria):
        rows = (
            db.session.query(Book.type, func.count(Purchase.id), func.coalesce(func.sum(Purchase.amount), 0))
            .join(Book, Book.id == Purchase.book_id)
            .filter(Purchase.status == "completed", *criteria)
            .group_by(Book.type)
            .all()
        )
        return {kind: {"count": int(cnt), "total_spent": round(float(total), 2)} for kind, cnt, total in rows}

    def parse_iso_datetime(raw):
        value = datetime.fromisoformat(raw)
        return as_utc(value)

    def visible_notifications(user_id):
        now = utcnow()
        return Notification.query.filter(
            Notification.user_id == user_id,
            (Notification.expires_at.is_(None)) | (Notification.expires_at > now),
        )

    def csv_response(filename, headers, rows):
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(headers)
        for row in rows:
            writer.writerow(row)
        return Response(
            output.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    @app.get("/health")
    def health():
        try:
            db.session.execute(db.select(func.count(Book.id)))
            database = "connected"
        except SQLAlchemyError:
            db.session.rollback()
            app.logger.warning("Health check could not reach the database")
            database = "disconnected"
        return jsonify(
            {
                "status": "OK",
                "timestamp": utcnow().isoformat(),
                "service": "Bookstore API",
                "database": database,
            }
        )

    @app.post("/auth/dev-token")
    def issue_dev_token():
        if not app.config["ENABLE_DEV_TOKENS"]:
            return not_found("Not found")
        data = as_data()
        errors = {}
        uid = _coerce_str(data, "uid", errors, required=True)
        email = _coerce_str(data, "email", errors, required=True)
        name = _coerce_str(data, "name", errors)
        if errors:
            return validation_error(errors)
        email = email.lower()
        claims = {"uid": uid, "email": email, "name": name or email.split("@")[0]}
        return jsonify({"token": identity_serializer.dumps(claims), "expires_in_seconds": app.config["IDENTITY_TOKEN_TTL_SECONDS"]})

    # Books

    @app.get("/books")
    def list_books():
        query = Book.query
        for word in (request.args.get("search") or "").lower().split():
            query = query.filter(
                func.lower(Book.title).contains(word)
                | func.lower(Book.description).contains(word)
                | func.lower(Book.author).contains(word)
                | func.lower(Book.genre).contains(word)
            )
        genre = (request.args.get("genre") or "").strip()
        if genre:
            query = query.filter(Book.genre.in_([g.strip() for g in genre.split(",") if g.strip()]))
        book_type = (request.args.get("type") or "").strip()
        if book_type:
            query = query.filter(Book.type == book_type)
        price_clause = price_filter_clause(request.args.get("price"))
        if price_clause is not None:
            query = query.filter(price_clause)
        author = (request.args.get("author") or "").strip().lower()
        if author:
            query = query.filter(func.lower(Book.author).contains(author))
        narrator = (request.args.get("narrator") or "").strip().lower()
        if narrator:
            query = query.filter(Book.type == "audiobook", func.lower(cast(Book.narrators, String)).contains(narrator))
        language = (request.args.get("language") or "").strip()
        if language:
            query = query.filter(Book.language == language)
        if as_bool(request.args.get("trending")):
            query = query.filter(Book.trending.is_(True))

        column = BOOK_SORT_FIELDS.get(request.args.get("sort_by") or "created_at", Book.created_at)
        descending = (request.args.get("sort_order") or "desc").lower() != "asc"
        query = query.order_by(column.desc() if descending else column.asc(), Book.id.desc() if descending else Book.id.asc())

        page, limit = page_args()
        books, total = paginate(query, page, limit)
        return jsonify({"items": [book_to_dict(b) for b in books], "pagination": pagination_payload(page, limit, total)})

    @app.get("/books/filters")
    def book_filter_options():
        book_type = (request.args.get("type") or "").strip()

        def distinct_values(column):
            query = db.session.query(column).distinct()
            if book_type:
                query = query.filter(Book.type == book_type)
            return sorted(value for (value,) in query.all() if value)

        return jsonify(
            {
                "authors": distinct_values(Book.author),
                "genres": distinct_values(Book.genre),
                "languages": distinct_values(Book.language),
            }
        )

    @app.get("/books/<int:book_id>")
    def get_book(book_id):
        book = db.get_or_404(Book, book_id, description="Book not found")
        return jsonify(book_to_dict(book))

    @app.post("/books")
    @require_auth(role="admin")
    def create_book():
        values, errors = validate_book_payload(as_data(), app.config["CDN_URL_PREFIX"])
        if errors:
            return validation_error(errors)
        if Book.query.filter_by(isbn=values["isbn"]).first():
            return jsonify({"error": "A book with this ISBN already exists"}), 409
        values.setdefault("max_downloads", 3 if values["price"] > 0 else 1)
        book = Book(**values)
        db.session.add(book)
        db.session.commit()
        log_admin_action(request.current_user.id, f"book_create:{book.id}")
        return jsonify(book_to_dict(book)), 201

    @app.put("/books/<int:book_id>")
    @require_auth(role="admin")
    def update_book(book_id):
        book = db.get_or_404(Book, book_id, description="Book not found")
        values, errors = validate_book_payload(as_data(), app.config["CDN_URL_PREFIX"], book=book)
        if errors:
            return validation_error(errors)
        if "isbn" in values and values["isbn"] != book.isbn and Book.query.filter_by(isbn=values["isbn"]).first():
            return jsonify({"error": "A book with this ISBN already exists"}), 409
        for key, value in values.items():
            setattr(book, key, value)
        db.session.commit()
        log_admin_action(request.current_user.id, f"book_update:{book.id}")
        return jsonify(book_to_dict(book))

    @app.delete("/books/<int:book_id>")
    @require_auth(role="admin")
    def delete_book(book_id):
        book = db.get_or_404(Book, book_id, description="Book not found")
        WishlistEntry.query.filter_by(book_id=book.id).delete()
        Review.query.filter_by(book_id=book.id).delete()
        db.session.delete(book)
        db.session.commit()
        log_admin_action(request.current_user.id, f"book_delete:{book_id}")
        return jsonify({"message": "Book deleted"})

    # Users

    @app.get("/users/me")
    @require_auth()
    def current_user_profile():
        user = request.current_user
        payload = user_to_dict(user)
        payload["stats"] = {
            "purchases": user_purchase_stats(user.id),
            "downloads": DownloadRecord.query.filter_by(user_id=user.id).count(),
            "wishlist": WishlistEntry.query.filter_by(user_id=user.id).count(),
            "reading_history": len(user.reading_history or []),
        }
        return jsonify(payload)

    @app.put("/users/me")
    @require_auth()
    def update_profile():
        user = request.current_user
        data = as_data()
        errors = {}
        changes = {}
        if "display_name" in data:
            changes["display_name"] = _coerce_str(data, "display_name", errors, required=True, max_length=100)
        for field in ("photo_url", "phone_number"):
            if field in data:
                changes[field] = _coerce_str(data, field, errors, max_length=500)
        if errors:
            return validation_error(errors)
        for field, value in changes.items():
            setattr(user, field, value)
        db.session.commit()
        return jsonify(user_to_dict(user))

    @app.patch("/users/me/preferences")
    @require_auth()
    def update_preferences():
        user = request.current_user
        data = as_data()
        preferences = default_preferences()
        preferences.update(user.preferences or {})
        preferences["notifications"] = dict(preferences.get("notifications") or {})
        errors = {}
        if "notifications" in data:
            channels = data.get("notifications")
            if not isinstance(channels, dict):
                errors["notifications"] = "Must be an object with email/push flags."
            else:
                for channel in ("email", "push"):
                    if channel in channels:
                        preferences["notifications"][channel] = as_bool(channels.get(channel))
        if "language" in data:
            language = _coerce_str(data, "language", errors, required=True, max_length=16)
            if language is not None:
                preferences["language"] = language
        if "theme" in data:
            if data.get("theme") not in THEMES:
                errors["theme"] = f"Must be one of: {', '.join(THEMES)}."
            else:
                preferences["theme"] = data.get("theme")
        if errors:
            return validation_error(errors)
        user.preferences = preferences
        db.session.commit()
        return jsonify({"preferences": preferences})

    @app.get("/users/me/stats")
    @require_auth()
    def current_user_stats():
        user = request.current_user
        purchases = user_purchase_stats(user.id)
        purchases["average"] = round(purchases["total"] / purchases["count"], 2) if purchases["count"] else 0.0
        purchases["by_type"] = purchases_by_type(Purchase.user_id == user.id)
        downloads = DownloadRecord.query.filter_by(user_id=user.id)
        review_count, average_given = (
            db.session.query(func.count(Review.id), func.avg(Review.rating)).filter(Review.user_id == user.id).one()
        )
        return jsonify(
            {
                "purchases": purchases,
                "downloads": {
                    "total": downloads.count(),
                    "free": downloads.filter(DownloadRecord.download_type == "free").count(),
                    "purchased": downloads.filter(DownloadRecord.download_type == "purchased").count(),
                },
                "wishlist": WishlistEntry.query.filter_by(user_id=user.id).count(),
                "reviews": {
                    "count": int(review_count or 0),
                    "average_given": round(float(average_given), 1) if average_given is not None else None,
                },
                "reading_history": len(user.reading_history or []),
            }
        )

    @app.get("/users/me/reading-history")
    @require_auth()
    def reading_history():
        rows = []
        for entry in request.current_user.reading_history or []:
            item = dict(entry)
            item["book"] = book_summary(db.session.get(Book, entry["book_id"]))
            rows.append(item)
        return jsonify(rows)

    @app.post("/users/me/reading-history")
    @require_auth()
    def add_reading_history():
        user = request.current_user
        data = as_data()
        book_id, error = require_int(data, "book_id")
        if error:
            return validation_error(error)
        if not db.session.get(Book, book_id):
            return not_found("Book not found")
        history = [dict(entry) for entry in (user.reading_history or [])]
        existing = next((entry for entry in history if entry["book_id"] == book_id), None)
        progress = existing["progress"] if existing else 0
        if data.get("progress") not in (None, ""):
            errors = {}
            progress = _coerce_int(data, "progress", errors, low=0, high=100)
            if errors:
                return validation_error(errors)
        if existing:
            history.remove(existing)
        history.insert(0, {"book_id": book_id, "progress": progress, "last_read_at": utcnow().isoformat()})
        user.reading_history = history[: app.config["READING_HISTORY_LIMIT"]]
        db.session.commit()
        return jsonify({"message": "Reading history updated", "reading_history": user.reading_history})

    @app.get("/users/me/purchases")
    @require_auth()
    def current_user_purchases():
        page, limit = page_args()
        query = Purchase.query.filter_by(user_id=request.current_user.id).order_by(Purchase.purchased_at.desc())
        rows, total = paginate(query, page, limit)
        return jsonify({"items": [purchase_to_dict(p) for p in rows], "pagination": pagination_payload(page, limit, total)})

    @app.get("/users/me/download-history")
    @require_auth()
    def current_user_downloads():
        page, limit = page_args()
        query = DownloadRecord.query.filter_by(user_id=request.current_user.id).order_by(DownloadRecord.downloaded_at.desc())
        rows, total = paginate(query, page, limit)
        return jsonify({"items": [download_to_dict(r) for r in rows], "pagination": pagination_payload(page, limit, total)})

    @app.delete("/users/me")
    @require_auth()
    def delete_my_account():
        user = request.current_user
        if user.role == "admin" and User.query.filter_by(role="admin").count() <= 1:
            return jsonify({"error": "The last admin account cannot be deleted"}), 400
        remove_user_data(user)
        db.session.commit()
        return jsonify({"message": "Account deleted"})

    @app.get("/users")
    @app.get("/admin/users")
    @require_auth(role="admin")
    def admin_list_users():
        query = User.query
        search = (request.args.get("search") or "").strip().lower()
        if search:
            query = query.filter(func.lower(User.email).contains(search) | func.lower(User.display_name).contains(search))
        role = (request.args.get("role") or "").strip()
        if role:
            query = query.filter(User.role == role)
        if request.args.get("suspended") is not None:
            query = query.filter(User.is_suspended.is_(as_bool(request.args.get("suspended"))))
        page, limit = page_args()
        users, total = paginate(query.order_by(User.created_at.desc(), User.id.desc()), page, limit)
        items = []
        for u in users:
            payload = user_to_dict(u, admin_view=True)
            payload["purchase_count"] = Purchase.query.filter_by(user_id=u.id, status="completed").count()
            payload["review_count"] = Review.query.filter_by(user_id=u.id).count()
            items.append(payload)
        return jsonify({"items": items, "pagination": pagination_payload(page, limit, total)})

    @app.get("/users/<int:user_id>")
    @require_auth(role="admin")
    def admin_get_user(user_id):
        user = db.get_or_404(User, user_id, description="User not found")
        payload = user_to_dict(user, admin_view=True)
        payload["stats"] = {
            "purchases": user_purchase_stats(user.id),
            "downloads": DownloadRecord.query.filter_by(user_id=user.id).count(),
            "wishlist": WishlistEntry.query.filter_by(user_id=user.id).count(),
            "reviews": Review.query.filter_by(user_id=user.id).count(),
        }
        return jsonify(payload)

    @app.delete("/users/<int:user_id>")
    @require_auth(role="admin")
    def admin_delete_user(user_id):
        if user_id == request.current_user.id:
            return jsonify({"error": "You cannot delete your own account"}), 400
        user = db.get_or_404(User, user_id, description="User not found")
        remove_user_data(user)
        db.session.commit()
        log_admin_action(request.current_user.id, f"user_delete:{user_id}")
        return jsonify({"message": "User deleted"})

    @app.put("/admin/users/<int:user_id>")
    @require_auth(role="admin")
    def admin_update_user(user_id):
        user = db.get_or_404(User, user_id, description="User not found")
        data = as_data()
        errors = {}
        is_self = user.id == request.current_user.id
        if "role" in data:
            if data.get("role") not in ROLES:
                errors["role"] = f"Must be one of: {', '.join(ROLES)}."
            elif is_self and data.get("role") != user.role:
                return jsonify({"error": "You cannot change your own role"}), 400
        if "is_suspended" in data and is_self and as_bool(data.get("is_suspended")):
            return jsonify({"error": "You cannot suspend your own account"}), 400
        display_name = None
        if "display_name" in data:
            display_name = _coerce_str(data, "display_name", errors, required=True, max_length=100)
        if errors:
            return validation_error(errors)
        if "role" in data:
            user.role = data.get("role")
        if "is_suspended" in data:
            user.is_suspended = as_bool(data.get("is_suspended"))
        if display_name:
            user.display_name = display_name
        db.session.commit()
        log_admin_action(request.current_user.id, f"user_update:{user.id}:role={user.role}:suspended={user.is_suspended}")
        return jsonify(user_to_dict(user, admin_view=True))

    @app.patch("/admin/users/<int:user_id>/suspend")
    @require_auth(role="admin")
    def admin_suspend_user(user_id):
        if user_id == request.current_user.id:
            return jsonify({"error": "You cannot suspend your own account"}), 400
        user = db.get_or_404(User, user_id, description="User not found")
        user.is_suspended = True
        db.session.commit()
        log_admin_action(request.current_user.id, f"user_suspend:{user.id}")
        return jsonify({"message": "User suspended", "user": user_to_dict(user, admin_view=True)})

    @app.patch("/admin/users/<int:user_id>/unsuspend")
    @require_auth(role="admin")
    def admin_unsuspend_user(user_id):
        user = db.get_or_404(User, user_id, description="User not found")
        user.is_suspended = False
        db.session.commit()
        log_admin_action(request.current_user.id, f"user_unsuspend:{user.id}")
        return jsonify({"message": "User reinstated", "user": user_to_dict(user, admin_view=True)})

    # Purchases

    @app.post("/purchases/simulate")
    @require_auth()
    def simulate_purchase():
        user = request.current_user
        data = as_data()
        book_id, error = require_int(data, "book_id")
        if error:
            return validation_error(error)
        payment_method = data.get("payment_method") or "credit_card"
        if payment_method not in PAYMENT_METHODS:
            return validation_error({"payment_method": f"Must be one of: {', '.join(PAYMENT_METHODS)}."})
        book = db.session.get(Book, book_id)
        if not book:
            return not_found("Book not found")
        existing = completed_purchase(user.id, book.id)
        if existing:
            return jsonify({"error": "Book already purchased", "purchase": purchase_to_dict(existing, book)}), 400
        if not book.price:
            return jsonify({"error": "This book is free. Use the download endpoint instead.", "is_free": True, "book_type": book.type}), 400

        now = utcnow()
        purchase = Purchase(
            user_id=user.id,
            book_id=book.id,
            amount=book.price,
            status="completed",
            payment_method=payment_method,
            order_ref=f"SIM-{int(now.timestamp() * 1000)}-{secrets.token_hex(4)}",
            max_downloads=book.max_downloads,
            download_expires_at=now + timedelta(hours=book.validity_hours),
            purchased_at=now,
        )
        db.session.add(purchase)
        user.total_spent = round((user.total_spent or 0) + book.price, 2)
        db.session.flush()
        notify(
            user.id,
            "purchase",
            "Purchase confirmed",
            f"You purchased {book.title} for {format_price(book.price)}.",
            data={"purchase_id": purchase.id, "book_id": book.id},
            action_link=f"/books/{book.id}",
        )
        db.session.commit()

        download_info = {
            "message": "You can now download this book",
            "book_type": book.type,
            "download_endpoint": f"/downloads/{book.id}",
            "preview_endpoint": f"/downloads/{book.id}/preview",
        }
        if book.type == "audiobook":
            download_info["audio_sample_endpoint"] = f"/downloads/{book.id}/audio-preview"
        return jsonify({"message": "Purchase simulated successfully", "purchase": purchase_to_dict(purchase, book), "download_info": download_info}), 201

    @app.get("/purchases/history")
    @require_auth()
    def purchase_history():
        user = request.current_user
        query = Purchase.query.filter(Purchase.user_id == user.id)
        status = (request.args.get("status") or "").strip()
        if status:
            if status not in PURCHASE_STATUSES:
                return validation_error({"status": f"Must be one of: {', '.join(PURCHASE_STATUSES)}."})
            query = query.filter(Purchase.status == status)
        book_type = (request.args.get("type") or "").strip()
        if book_type:
            query = query.join(Book, Book.id == Purchase.book_id).filter(Book.type == book_type)
        page, limit = page_args()
        rows, total = paginate(query.order_by(Purchase.purchased_at.desc()), page, limit)
        return jsonify(
            {
                "items": [purchase_to_dict(p) for p in rows],
                "stats": {
                    "total_spent": user_purchase_stats(user.id)["total"],
                    "total_purchases": total,
                    "by_type": purchases_by_type(Purchase.user_id == user.id),
                },
                "pagination": pagination_payload(page, limit, total),
            }
        )

    @app.get("/purchases/stats")
    @require_auth()
    def purchase_stats():
        user = request.current_user
        completed = user_purchase_stats(user.id)
        first_at, last_at = (
            db.session.query(func.min(Purchase.purchased_at), func.max(Purchase.purchased_at))
            .filter(Purchase.user_id == user.id, Purchase.status == "completed")
            .one()
        )
        return jsonify(
            {
                "completed": completed["count"],
                "total_spent": completed["total"],
                "average_purchase": round(completed["total"] / completed["count"], 2) if completed["count"] else 0.0,
                "cancelled": Purchase.query.filter_by(user_id=user.id, status="cancelled").count(),
                "by_type": purchases_by_type(Purchase.user_id == user.id),
                "first_purchase_at": isoformat(first_at),
                "last_purchase_at": isoformat(last_at),
            }
        )

    @app.get("/purchases/check/<int:book_id>")
    @require_auth()
    def check_book_purchase(book_id):
        book = db.get_or_404(Book, book_id, description="Book not found")
        purchase = completed_purchase(request.current_user.id, book.id)
        is_free = not book.price
        return jsonify(
            {
                "is_purchased": purchase is not None,
                "is_free": is_free,
                "can_download": purchase is not None or is_free,
                "purchase": purchase_to_dict(purchase, book, include_book=False) if purchase else None,
                "book": book_summary(book),
            }
        )

    @app.get("/purchases/<int:purchase_id>")
    @require_auth()
    def get_purchase(purchase_id):
        purchase = Purchase.query.filter_by(id=purchase_id, user_id=request.current_user.id).first()
        if not purchase:
            return not_found("Purchase not found")
        book = db.session.get(Book, purchase.book_id)
        payload = purchase_to_dict(purchase, book)
        payload["download_info"] = check_download_eligibility(book, purchase) if book else None
        return jsonify(payload)

    @app.patch("/purchases/<int:purchase_id>/cancel")
    @require_auth()
    def cancel_own_purchase(purchase_id):
        purchase = Purchase.query.filter_by(id=purchase_id, user_id=request.current_user.id, status="completed").first()
        if not purchase:
            return not_found("Purchase not found or already cancelled")
        cancel_purchase(purchase)
        db.session.commit()
        return jsonify({"message": "Purchase cancelled", "purchase": purchase_to_dict(purchase)})

    @app.get("/admin/purchases")
    @require_auth(role="admin")
    def admin_list_purchases():
        query = Purchase.query
        status = (request.args.get("status") or "").strip()
        if status:
            query = query.filter(Purchase.status == status)
        user_id = request.args.get("user_id", type=int)
        if user_id:
            query = query.filter(Purchase.user_id == user_id)
        book_id = request.args.get("book_id", type=int)
        if book_id:
            query = query.filter(Purchase.book_id == book_id)
        page, limit = page_args()
        rows, total = paginate(query.order_by(Purchase.purchased_at.desc()), page, limit)
        items = []
        for p in rows:
            payload = purchase_to_dict(p)
            owner = db.session.get(User, p.user_id)
            payload["user"] = {"id": owner.id, "email": owner.email, "display_name": owner.display_name} if owner else None
            items.append(payload)
        return jsonify({"items": items, "pagination": pagination_payload(page, limit, total)})

    @app.patch("/admin/purchases/<int:purchase_id>/refund")
    @require_auth(role="admin")
    def admin_refund_purchase(purchase_id):
        purchase = db.get_or_404(Purchase, purchase_id, description="Purchase not found")
        if purchase.status != "completed":
            return jsonify({"error": "Only completed purchases can be refunded"}), 400
        owner = cancel_purchase(purchase)
        if owner:
            book = db.session.get(Book, purchase.book_id)
            notify(
                owner.id,
                "purchase",
                "Refund processed",
                f"Your purchase of {book.title if book else 'a book'} was refunded.",
                data={"purchase_id": purchase.id, "amount": purchase.amount},
            )
        db.session.commit()
        log_admin_action(request.current_user.id, f"purchase_refund:{purchase.id}")
        return jsonify({"message": "Purchase refunded", "purchase": purchase_to_dict(purchase)})

    # Reviews

    def load_review(review_id):
        return db.get_or_404(Review, review_id, description="Review not found")

    def validate_review_fields(data, partial=False):
        values = {}
        errors = {}
        if "rating" in data or not partial:
            if data.get("rating") in (None, ""):
                errors["rating"] = "This field is required."
            else:
                rating = _coerce_int(data, "rating", errors, low=1, high=5)
                if rating is not None:
                    values["rating"] = rating
        if "comment" in data or not partial:
            comment = _coerce_str(data, "comment", errors, required=True, max_length=REVIEW_COMMENT_MAX)
            if comment is not None:
                values["comment"] = comment
        if "title" in data:
            title = _coerce_str(data, "title", errors, max_length=200)
            if title is not None:
                values["title"] = title or None
        return values, errors

    def find_reply(review, reply_id):
        return next((r for r in (review.replies or []) if r["id"] == reply_id), None)

    @app.get("/reviews/books/<int:book_id>")
    def list_book_reviews(book_id):
        book = db.get_or_404(Book, book_id, description="Book not found")
        viewer = get_optional_user()
        query = Review.query.filter(Review.book_id == book.id, Review.is_hidden.is_(False))
        rating = request.args.get("rating", type=int)
        if rating:
            query = query.filter(Review.rating == rating)
        sort = (request.args.get("sort") or "recent").lower()
        page, limit = page_args()
        if sort == "helpful":
            everything = query.all()
            everything.sort(key=lambda r: (len(r.likes or []), as_utc(r.created_at)), reverse=True)
            total = len(everything)
            rows = everything[(page - 1) * limit : page * limit]
        else:
            if sort == "rating_high":
                query = query.order_by(Review.rating.desc(), Review.created_at.desc())
            elif sort == "rating_low":
                query = query.order_by(Review.rating.asc(), Review.created_at.desc())
            else:
                query = query.order_by(Review.created_at.desc(), Review.id.desc())
            rows, total = paginate(query, page, limit)

        distribution = empty_distribution()
        for star, count in (
            db.session.query(Review.rating, func.count(Review.id))
            .filter(Review.book_id == book.id, Review.is_hidden.is_(False))
            .group_by(Review.rating)
            .all()
        ):
            distribution[str(star)] = int(count)

        viewer_id = viewer.id if viewer else None
        return jsonify(
            {
                "items": [review_to_dict(r, viewer_id) for r in rows],
                "stats": {"average": book.rating_average, "count": book.rating_count, "distribution": distribution},
                "pagination": pagination_payload(page, limit, total),
            }
        )

    @app.post("/reviews/books/<int:book_id>")
    @require_auth()
    def create_review(book_id):
        user = request.current_user
        values, errors = validate_review_fields(as_data())
        if errors:
            return validation_error(errors)
        book = db.session.get(Book, book_id)
        if not book:
            return not_found("Book not found")
        existing = Review.query.filter_by(user_id=user.id, book_id=book.id).first()
        if existing:
            return jsonify({"error": "You have already reviewed this book", "existing_review_id": existing.id}), 400
        review = Review(user_id=user.id, book_id=book.id, **values)
        db.session.add(review)
        db.session.flush()
        refresh_rating_stats(book.id)
        db.session.commit()
        return jsonify({"message": "Review submitted successfully", "review": review_to_dict(review, user.id)}), 201

    @app.get("/reviews/me")
    @require_auth()
    def my_reviews():
        page, limit = page_args()
        query = Review.query.filter_by(user_id=request.current_user.id).order_by(Review.created_at.desc())
        rows, total = paginate(query, page, limit)
        items = []
        for r in rows:
            payload = review_to_dict(r, request.current_user.id)
            payload["book"] = book_summary(db.session.get(Book, r.book_id))
            items.append(payload)
        return jsonify({"items": items, "pagination": pagination_payload(page, limit, total)})

    @app.get("/reviews/check/<int:book_id>")
    @require_auth()
    def check_my_review(book_id):
        review = Review.query.filter_by(user_id=request.current_user.id, book_id=book_id).first()
        return jsonify(
            {
                "has_reviewed": review is not None,
                "review": review_to_dict(review, request.current_user.id) if review else None,
            }
        )

    @app.get("/reviews/<int:review_id>")
    def get_review(review_id):
        review = load_review(review_id)
        viewer = get_optional_user()
        if review.is_hidden and not (viewer and (viewer.id == review.user_id or viewer.role == "admin")):
            return not_found("Review not found")
        return jsonify(review_to_dict(review, viewer.id if viewer else None))

    @app.put("/reviews/<int:review_id>")
    @require_auth()
    def update_review(review_id):
        review = load_review(review_id)
        if review.user_id != request.current_user.id:
            return auth_error("You can only edit your own reviews", "FORBIDDEN", 403)
        values, errors = validate_review_fields(as_data(), partial=True)
        if errors:
            return validation_error(errors)
        for key, value in values.items():
            setattr(review, key, value)
        review.edited_at = utcnow()
        refresh_rating_stats(review.book_id)
        db.session.commit()
        return jsonify({"message": "Review updated successfully", "review": review_to_dict(review, request.current_user.id)})

    @app.delete("/reviews/<int:review_id>")
    @require_auth()
    def delete_review(review_id):
        user = request.current_user
        review = load_review(review_id)
        book_id = review.book_id
        hard_delete = review.user_id != user.id
        if not hard_delete:
            review.is_hidden = True
            review.hidden_reason = "user_deleted"
            review.hidden_at = utcnow()
        elif user.role == "admin":
            db.session.delete(review)
        else:
            return auth_error("You do not have permission to delete this review", "FORBIDDEN", 403)
        db.session.flush()
        refresh_rating_stats(book_id)
        db.session.commit()
        if hard_delete:
            log_admin_action(user.id, f"review_delete:{review_id}")
            return jsonify({"message": "Review removed by admin"})
        return jsonify({"message": "Review deleted successfully"})

    @app.post("/reviews/<int:review_id>/reply")
    @require_auth()
    def add_reply(review_id):
        user = request.current_user
        review = load_review(review_id)
        if review.is_hidden:
            return not_found("Review not found")
        errors = {}
        comment = _coerce_str(as_data(), "comment", errors, required=True, max_length=REPLY_COMMENT_MAX)
        if errors:
            return validation_error(errors)
        reply = {
            "id": secrets.token_hex(8),
            "user_id": user.id,
            "comment": comment,
            "likes": [],
            "dislikes": [],
            "created_at": utcnow().isoformat(),
        }
        review.replies = list(review.replies or []) + [reply]
        if review.user_id != user.id:
            notify(
                review.user_id,
                "review",
                "New reply to your review",
                f"{user.display_name} replied to your review.",
                data={"review_id": review.id, "reply_id": reply["id"]},
                action_link=f"/books/{review.book_id}",
            )
        db.session.commit()
        return jsonify({"message": "Reply added", "reply": reply_to_dict(reply, user.id)}), 201

    @app.delete("/reviews/<int:review_id>/replies/<reply_id>")
    @require_auth()
    def delete_reply(review_id, reply_id):
        user = request.current_user
        review = load_review(review_id)
        reply = find_reply(review, reply_id)
        if reply is None:
            return not_found("Reply not found")
        if reply["user_id"] != user.id and user.role != "admin":
            return auth_error("You do not have permission to delete this reply", "FORBIDDEN", 403)
        review.replies = [r for r in review.replies if r["id"] != reply_id]
        db.session.commit()
        return jsonify({"message": "Reply deleted"})

    @app.post("/reviews/<int:review_id>/vote")
    @require_auth()
    def vote_on_review(review_id):
        user = request.current_user
        review = load_review(review_id)
        data = as_data()
        vote = data.get("vote")
        if vote not in VOTES:
            return validation_error({"vote": f"Must be one of: {', '.join(VOTES)}."})
        reply_id = data.get("reply_id")
        if reply_id:
            reply = find_reply(review, reply_id)
            if reply is None:
                return not_found("Reply not found")
            if reply["user_id"] == user.id:
                return jsonify({"error": "You cannot vote on your own reply"}), 400
            likes, dislikes, state = toggle_vote(reply.get("likes"), reply.get("dislikes"), user.id, vote)
            replies = []
            for r in review.replies:
                if r["id"] == reply_id:
                    r = dict(r, likes=likes, dislikes=dislikes)
                replies.append(r)
            review.replies = replies
        else:
            if review.user_id == user.id:
                return jsonify({"error": "You cannot vote on your own review"}), 400
            likes, dislikes, state = toggle_vote(review.likes, review.dislikes, user.id, vote)
            review.likes = likes
            review.dislikes = dislikes
        db.session.commit()
        return jsonify({"likes": len(likes), "dislikes": len(dislikes), "user_vote": state})

    @app.post("/reviews/<int:review_id>/report")
    @require_auth()
    def report_review(review_id):
        user = request.current_user
        review = load_review(review_id)
        data = as_data()
        reason = data.get("reason")
        if not reason:
            return validation_error({"reason": "This field is required."})
        if reason not in REPORT_REASONS:
            return validation_error({"reason": f"Must be one of: {', '.join(REPORT_REASONS)}."})
        target_type = data.get("target_type") or "review"
        if target_type not in REPORT_TARGETS:
            return validation_error({"target_type": f"Must be one of: {', '.join(REPORT_TARGETS)}."})
        errors = {}
        details = _coerce_str(data, "details", errors, max_length=500)
        if errors:
            return validation_error(errors)
        reply_id = None
        if target_type == "reply":
            reply_id = data.get("reply_id")
            reply = find_reply(review, reply_id) if reply_id else None
            if reply is None:
                return not_found("Reply not found")
            author_id = reply["user_id"]
        else:
            author_id = review.user_id
        if author_id == user.id:
            return jsonify({"error": "You cannot report your own content"}), 400
        reports = list(review.reports or [])
        if any(
            r.get("user_id") == user.id and r.get("target_type") == target_type and r.get("reply_id") == reply_id
            for r in reports
        ):
            return jsonify({"error": "You have already reported this content"}), 400
        reports.append(
            {
                "user_id": user.id,
                "reason": reason,
                "target_type": target_type,
                "reply_id": reply_id,
                "details": details or None,
                "reported_at": utcnow().isoformat(),
            }
        )
        review.reports = reports
        review.report_count = len(reports)
        db.session.commit()
        return jsonify({"message": "Content reported successfully", "report_count": review.report_count})

    @app.get("/admin/reviews")
    @require_auth(role="admin")
    def admin_list_reviews():
        query = Review.query
        if request.args.get("hidden") is not None:
            query = query.filter(Review.is_hidden.is_(as_bool(request.args.get("hidden"))))
        book_id = request.args.get("book_id", type=int)
        if book_id:
            query = query.filter(Review.book_id == book_id)
        page, limit = page_args()
        rows, total = paginate(query.order_by(Review.created_at.desc(), Review.id.desc()), page, limit)
        return jsonify({"items": [review_to_dict(r, moderation=True) for r in rows], "pagination": pagination_payload(page, limit, total)})

    @app.get("/admin/reviews/reported")
    @require_auth(role="admin")
    def admin_reported_reviews():
        page, limit = page_args()
        query = Review.query.filter(Review.report_count > 0).order_by(Review.report_count.desc(), Review.created_at.desc())
        rows, total = paginate(query, page, limit)
        items = []
        for r in rows:
            payload = review_to_dict(r, moderation=True)
            payload["book"] = book_summary(db.session.get(Book, r.book_id))
            items.append(payload)
        return jsonify({"items": items, "pagination": pagination_payload(page, limit, total)})

    @app.patch("/admin/reviews/<int:review_id>/hide")
    @require_auth(role="admin")
    def admin_hide_review(review_id):
        review = load_review(review_id)
        data = as_data()
        errors = {}
        reason = _coerce_str(data, "reason", errors, max_length=255)
        if errors:
            return validation_error(errors)
        review.is_hidden = as_bool(data.get("is_hidden"), True)
        if review.is_hidden:
            review.hidden_reason = reason or "moderation"
            review.hidden_by = request.current_user.id
            review.hidden_at = utcnow()
            notify(
                review.user_id,
                "review",
                "Your review was hidden",
                f"A moderator hid your review. Reason: {review.hidden_reason}.",
                data={"review_id": review.id},
                priority="high",
            )
        else:
            review.hidden_reason = None
            review.hidden_by = None
            review.hidden_at = None
        refresh_rating_stats(review.book_id)
        db.session.commit()
        log_admin_action(request.current_user.id, f"review_{'hide' if review.is_hidden else 'unhide'}:{review.id}")
        return jsonify(
            {
                "message": f"Review {'hidden' if review.is_hidden else 'unhidden'} successfully",
                "review": review_to_dict(review, moderation=True),
            }
        )

    @app.delete("/admin/reviews/<int:review_id>/reports")
    @require_auth(role="admin")
    def admin_clear_reports(review_id):
        review = load_review(review_id)
        review.reports = []
        review.report_count = 0
        db.session.commit()
        log_admin_action(request.current_user.id, f"review_clear_reports:{review.id}")
        return jsonify({"message": "All reports cleared from review", "review": review_to_dict(review, moderation=True)})

    # Wishlist

    @app.post("/wishlist")
    @require_auth()
    def add_to_wishlist():
        user = request.current_user
        data = as_data()
        book_id, error = require_int(data, "book_id")
        if error:
            return validation_error(error)
        priority = data.get("priority") or "medium"
        if priority not in WISHLIST_PRIORITIES:
            return validation_error({"priority": f"Must be one of: {', '.join(WISHLIST_PRIORITIES)}."})
        errors = {}
        notes = _coerce_str(data, "notes", errors, max_length=500)
        if errors:
            return validation_error(errors)
        if not db.session.get(Book, book_id):
            return not_found("Book not found")
        if WishlistEntry.query.filter_by(user_id=user.id, book_id=book_id).first():
            return jsonify({"error": "Book already in wishlist"}), 400
        entry = WishlistEntry(user_id=user.id, book_id=book_id, notes=notes, priority=priority)
        db.session.add(entry)
        db.session.commit()
        return jsonify({"message": "Book added to wishlist successfully", "item": wishlist_to_dict(entry)}), 201

    @app.get("/wishlist")
    @require_auth()
    def get_wishlist():
        query = WishlistEntry.query.filter(WishlistEntry.user_id == request.current_user.id)
        sort_by = (request.args.get("sort_by") or "added_at").lower()
        descending = (request.args.get("sort_order") or "desc").lower() != "asc"
        if sort_by == "priority":
            column = case({"low": 1, "medium": 2, "high": 3}, value=WishlistEntry.priority, else_=0)
        elif sort_by == "title":
            query = query.join(Book, Book.id == WishlistEntry.book_id)
            column = func.lower(Book.title)
        else:
            column = WishlistEntry.added_at
        query = query.order_by(column.desc() if descending else column.asc(), WishlistEntry.id.desc())
        page, limit = page_args()
        rows, total = paginate(query, page, limit)
        return jsonify({"items": [wishlist_to_dict(e) for e in rows], "pagination": pagination_payload(page, limit, total)})

    @app.get("/wishlist/check/<int:book_id>")
    @require_auth()
    def check_wishlist(book_id):
        entry = WishlistEntry.query.filter_by(user_id=request.current_user.id, book_id=book_id).first()
        return jsonify({"in_wishlist": entry is not None, "item": wishlist_to_dict(entry) if entry else None})

    @app.get("/wishlist/stats")
    @require_auth()
    def wishlist_stats():
        user_id = request.current_user.id
        rows = (
            db.session.query(Book.type, func.count(WishlistEntry.id), func.coalesce(func.sum(Book.price), 0))
            .join(Book, Book.id == WishlistEntry.book_id)
            .filter(WishlistEntry.user_id == user_id)
            .group_by(Book.type)
            .all()
        )
        by_priority = {priority: 0 for priority in WISHLIST_PRIORITIES}
        for priority, count in (
            db.session.query(WishlistEntry.priority, func.count(WishlistEntry.id))
            .filter(WishlistEntry.user_id == user_id)
            .group_by(WishlistEntry.priority)
            .all()
        ):
            by_priority[priority] = int(count)
        return jsonify(
            {
                "total_items": WishlistEntry.query.filter_by(user_id=user_id).count(),
                "total_value": round(sum(float(total) for _, _, total in rows), 2),
                "by_type": {kind: int(count) for kind, count, _ in rows},
                "by_priority": by_priority,
            }
        )

    @app.patch("/wishlist/<int:entry_id>")
    @require_auth()
    def update_wishlist_entry(entry_id):
        entry = WishlistEntry.query.filter_by(id=entry_id, user_id=request.current_user.id).first()
        if not entry:
            return not_found("Wishlist item not found")
        data = as_data()
        if "priority" in data:
            if data.get("priority") not in WISHLIST_PRIORITIES:
                return validation_error({"priority": f"Must be one of: {', '.join(WISHLIST_PRIORITIES)}."})
            entry.priority = data.get("priority")
        if "notes" in data:
            errors = {}
            notes = _coerce_str(data, "notes", errors, max_length=500)
            if errors:
                db.session.rollback()
                return validation_error(errors)
            entry.notes = notes
        db.session.commit()
        return jsonify({"message": "Wishlist item updated", "item": wishlist_to_dict(entry)})

    @app.delete("/wishlist/<int:entry_id>")
    @require_auth()
    def remove_wishlist_entry(entry_id):
        entry = WishlistEntry.query.filter_by(id=entry_id, user_id=request.current_user.id).first()
        if not entry:
            return not_found("Wishlist item not found")
        db.session.delete(entry)
        db.session.commit()
        return jsonify({"message": "Book removed from wishlist successfully"})

    @app.delete("/wishlist/book/<int:book_id>")
    @require_auth()
    def remove_wishlist_book(book_id):
        entry = WishlistEntry.query.filter_by(book_id=book_id, user_id=request.current_user.id).first()
        if not entry:
            return not_found("Book not found in wishlist")
        db.session.delete(entry)
        db.session.commit()
        return jsonify({"message": "Book removed from wishlist successfully"})

    @app.delete("/wishlist")
    @require_auth()
    def clear_wishlist():
        removed = WishlistEntry.query.filter_by(user_id=request.current_user.id).delete()
        db.session.commit()
        return jsonify({"message": "Wishlist cleared", "removed": int(removed or 0)})

    # Downloads

    def book_download_info(book):
        info = {
            "id": book.id,
            "title": book.title,
            "author": book.author,
            "type": book.type,
            "file_size": format_file_size(book.file_size),
            "format": book.file_format,
        }
        if book.type == "audiobook":
            info["audio_length"] = format_audio_length(book.audio_length)
            info["narrators"] = ", ".join(narrator_names(book))
            info["quality"] = book.audio_quality
        else:
            info["pages"] = book.pages
        return info

    @app.post("/downloads/<int:book_id>")
    @require_auth()
    def download_book(book_id):
        user = request.current_user
        book = db.get_or_404(Book, book_id, description="Book not found")
        purchase = completed_purchase(user.id, book.id) if book.price else None
        eligibility = check_download_eligibility(book, purchase)
        if not eligibility["allowed"]:
            payload = {
                "error": eligibility["message"],
                "restriction": eligibility["reason"],
                "remaining_downloads": eligibility.get("remaining"),
                "window_expires": eligibility.get("expires_at"),
            }
            if eligibility["reason"] == "purchase_required":
                payload["purchase_required"] = True
                payload["book"] = {"title": book.title, "price": book.price, "type": book.type}
            return jsonify(payload), 403

        now = utcnow()
        record = DownloadRecord(
            user_id=user.id,
            book_id=book.id,
            download_type="purchased" if purchase else "free",
            purchase_id=purchase.id if purchase else None,
            user_agent=request.user_agent.string if request.user_agent else None,
            ip_address=get_client_ip(),
            downloaded_at=now,
        )
        db.session.add(record)
        if purchase:
            purchase.downloads_used += 1
            purchase.last_downloaded_at = now
        db.session.commit()

        link_expires_at = now + timedelta(hours=book.validity_hours)
        return jsonify(
            {
                "message": "Download link generated successfully",
                "download_info": {
                    "book": book_download_info(book),
                    "download_type": record.download_type,
                    "download_url": book.file_url,
                    "file_name": download_file_name(book),
                    "expires_in": f"{book.validity_hours} hours",
                    "expires_at": link_expires_at.isoformat(),
                    "downloads_remaining": purchase.max_downloads - purchase.downloads_used if purchase else None,
                    "download_id": record.id,
                    "timestamp": now.isoformat(),
                },
            }
        )

    @app.get("/downloads/<int:book_id>/check-eligibility")
    @require_auth()
    def download_eligibility(book_id):
        book = db.get_or_404(Book, book_id, description="Book not found")
        purchase = completed_purchase(request.current_user.id, book.id) if book.price else None
        eligibility = check_download_eligibility(book, purchase)
        return jsonify(
            {
                "book_id": book.id,
                "can_download": eligibility["allowed"],
                "reason": eligibility["reason"],
                "message": eligibility.get("message"),
                "is_free": eligibility["is_free"],
                "remaining_downloads": eligibility.get("remaining"),
                "window_expires": eligibility.get("expires_at"),
                "download_policy": {
                    "max_downloads": book.max_downloads,
                    "validity_hours": book.validity_hours,
                    "allow_multiple_devices": book.allow_multiple_devices,
                },
            }
        )

    @app.get("/downloads/<int:book_id>/preview")
    def book_preview(book_id):
        book = db.get_or_404(Book, book_id, description="Book not found")
        if not book.preview_enabled:
            return jsonify({"error": "Preview not available for this book"}), 403
        if book.price:
            viewer = get_optional_user()
            if not (viewer and completed_purchase(viewer.id, book.id)):
                return (
                    jsonify(
                        {
                            "error": "Purchase required to view preview",
                            "purchase_required": True,
                            "book_type": book.type,
                            "preview_pages": book.preview_pages,
                            "preview_minutes": book.sample_minutes,
                        }
                    ),
                    403,
                )
        book_info = {
            "title": book.title,
            "author": book.author,
            "type": book.type,
            "is_free": not book.price,
            "price": book.price,
        }
        if book.type == "audiobook":
            book_info["audio_length"] = format_audio_length(book.audio_length)
            book_info["narrators"] = ", ".join(narrator_names(book))
        else:
            book_info["pages"] = book.pages
        return jsonify({"book_type": book.type, "format": book.file_format, "preview": preview_content(book), "book_info": book_info})

    @app.get("/downloads/<int:book_id>/audio-preview")
    def audio_preview(book_id):
        book = db.get_or_404(Book, book_id, description="Book not found")
        if book.type != "audiobook":
            return jsonify({"error": "This is not an audiobook"}), 400
        if not book.audio_sample_url:
            return not_found("Audio sample not available")
        return jsonify(
            {
                "preview": {
                    "url": book.audio_sample_url,
                    "duration_minutes": book.sample_minutes,
                    "format": book.file_format,
                },
                "book": {
                    "title": book.title,
                    "author": book.author,
                    "narrators": ", ".join(narrator_names(book)),
                    "audio_length": format_audio_length(book.audio_length),
                },
            }
        )

    @app.get("/downloads/history")
    @require_auth()
    def download_history():
        query = DownloadRecord.query.filter_by(user_id=request.current_user.id)
        download_type = (request.args.get("type") or "").strip()
        if download_type:
            if download_type not in DOWNLOAD_TYPES:
                return validation_error({"type": f"Must be one of: {', '.join(DOWNLOAD_TYPES)}."})
            query = query.filter(DownloadRecord.download_type == download_type)
        page, limit = page_args()
        rows, total = paginate(query.order_by(DownloadRecord.downloaded_at.desc(), DownloadRecord.id.desc()), page, limit)
        return jsonify({"items": [download_to_dict(r) for r in rows], "pagination": pagination_payload(page, limit, total)})

    @app.get("/downloads/stats")
    @require_auth()
    def download_stats():
        user_id = request.current_user.id
        base = DownloadRecord.query.filter(DownloadRecord.user_id == user_id)
        by_type = {
            kind: int(count)
            for kind, count in db.session.query(Book.type, func.count(DownloadRecord.id))
            .join(Book, Book.id == DownloadRecord.book_id)
            .filter(DownloadRecord.user_id == user_id)
            .group_by(Book.type)
            .all()
        }
        unique_books = db.session.query(func.count(func.distinct(DownloadRecord.book_id))).filter(DownloadRecord.user_id == user_id).scalar()
        last = base.order_by(DownloadRecord.downloaded_at.desc()).first()
        return jsonify(
            {
                "total": base.count(),
                "free": base.filter(DownloadRecord.download_type == "free").count(),
                "purchased": base.filter(DownloadRecord.download_type == "purchased").count(),
                "unique_books": int(unique_books or 0),
                "by_book_type": by_type,
                "last_downloaded_at": isoformat(last.downloaded_at) if last else None,
            }
        )

    @app.delete("/downloads/history")
    @require_auth()
    def clear_download_history():
        removed = DownloadRecord.query.filter_by(user_id=request.current_user.id).delete()
        db.session.commit()
        return jsonify({"message": "Download history cleared", "removed": int(removed or 0)})

    # Notifications

    def load_notification(notification_id):
        return Notification.query.filter_by(id=notification_id, user_id=request.current_user.id).first()

    @app.get("/notifications")
    @require_auth()
    def list_notifications():
        user_id = request.current_user.id
        query = visible_notifications(user_id)
        if as_bool(request.args.get("unread_only")):
            query = query.filter(Notification.is_read.is_(False))
        kind = (request.args.get("type") or "").strip()
        if kind:
            query = query.filter(Notification.type == kind)
        page, limit = page_args()
        rows, total = paginate(
            query.order_by(Notification.is_pinned.desc(), Notification.created_at.desc(), Notification.id.desc()),
            page,
            limit,
        )
        return jsonify(
            {
                "items": [notification_to_dict(n) for n in rows],
                "unread_count": visible_notifications(user_id).filter(Notification.is_read.is_(False)).count(),
                "pagination": pagination_payload(page, limit, total),
            }
        )

    @app.get("/notifications/unread-count")
    @require_auth()
    def unread_notification_count():
        count = visible_notifications(request.current_user.id).filter(Notification.is_read.is_(False)).count()
        return jsonify({"unread_count": count})

    @app.get("/notifications/<int:notification_id>")
    @require_auth()
    def get_notification(notification_id):
        row = visible_notifications(request.current_user.id).filter(Notification.id == notification_id).first()
        if not row:
            return not_found("Notification not found")
        return jsonify(notification_to_dict(row))

    @app.put("/notifications/<int:notification_id>/read")
    @require_auth()
    def mark_notification_read(notification_id):
        row = load_notification(notification_id)
        if not row:
            return not_found("Notification not found")
        row.is_read = True
        db.session.commit()
        return jsonify(notification_to_dict(row))

    @app.put("/notifications/<int:notification_id>/unread")
    @require_auth()
    def mark_notification_unread(notification_id):
        row = load_notification(notification_id)
        if not row:
            return not_found("Notification not found")
        row.is_read = False
        db.session.commit()
        return jsonify(notification_to_dict(row))

    @app.put("/notifications/read-all")
    @require_auth()
    def mark_all_notifications_read():
        updated = Notification.query.filter_by(user_id=request.current_user.id, is_read=False).update({"is_read": True})
        db.session.commit()
        return jsonify({"message": "All notifications marked as read", "updated": int(updated or 0)})

    @app.put("/notifications/<int:notification_id>/pin")
    @require_auth()
    def toggle_notification_pin(notification_id):
        row = load_notification(notification_id)
        if not row:
            return not_found("Notification not found")
        row.is_pinned = not row.is_pinned
        db.session.commit()
        return jsonify(notification_to_dict(row))

    @app.delete("/notifications/<int:notification_id>")
    @require_auth()
    def delete_notification(notification_id):
        row = load_notification(notification_id)
        if not row:
            return not_found("Notification not found")
        db.session.delete(row)
        db.session.commit()
        return jsonify({"message": "Notification deleted"})

    @app.delete("/notifications")
    @require_auth()
    def clear_notifications():
        removed = Notification.query.filter_by(user_id=request.current_user.id).delete()
        db.session.commit()
        return jsonify({"message": "Notifications cleared", "removed": int(removed or 0)})

    @app.post("/admin/notifications/broadcast")
    @require_auth(role="admin")
    def broadcast_notification():
        values, errors = validate_notification_payload(as_data())
        if errors:
            return validation_error(errors)
        recipients = User.query.filter(User.is_suspended.is_(False)).all()
        for recipient in recipients:
            notify(
                recipient.id,
                values["type"],
                values["title"],
                values["message"],
                action_link=values["action_link"],
                priority=values["priority"],
                expires_at=values["expires_at"],
            )
        db.session.commit()
        log_admin_action(request.current_user.id, f"notification_broadcast:{len(recipients)}")
        return jsonify({"message": "Notification broadcast", "sent": len(recipients)}), 201

    @app.post("/admin/notifications/send")
    @require_auth(role="admin")
    def send_notification():
        data = as_data()
        values, errors = validate_notification_payload(data)
        user_ids = data.get("user_ids")
        if not isinstance(user_ids, list) or not user_ids:
            errors["user_ids"] = "Provide a non-empty list of user ids."
        if errors:
            return validation_error(errors)
        sent = []
        missing = []
        for raw in user_ids:
            recipient = db.session.get(User, raw) if isinstance(raw, int) else None
            if recipient is None:
                missing.append(raw)
                continue
            notify(
                recipient.id,
                values["type"],
                values["title"],
                values["message"],
                action_link=values["action_link"],
                priority=values["priority"],
                expires_at=values["expires_at"],
            )
            sent.append(recipient.id)
        db.session.commit()
        log_admin_action(request.current_user.id, f"notification_send:{len(sent)}")
        return jsonify({"message": "Notifications sent", "sent": len(sent), "missing_user_ids": missing}), 201

    @app.get("/admin/notifications/user/<int:user_id>")
    @require_auth(role="admin")
    def admin_user_notifications(user_id):
        user = db.get_or_404(User, user_id, description="User not found")
        page, limit = page_args()
        query = Notification.query.filter_by(user_id=user.id).order_by(Notification.created_at.desc(), Notification.id.desc())
        rows, total = paginate(query, page, limit)
        return jsonify(
            {
                "user": {"id": user.id, "email": user.email, "display_name": user.display_name},
                "items": [notification_to_dict(n) for n in rows],
                "unread_count": Notification.query.filter_by(user_id=user.id, is_read=False).count(),
                "pagination": pagination_payload(page, limit, total),
            }
        )

    @app.get("/admin/notifications/stats")
    @require_auth(role="admin")
    def notification_stats():
        by_type = dict(db.session.query(Notification.type, func.count(Notification.id)).group_by(Notification.type).all())
        by_priority = dict(db.session.query(Notification.priority, func.count(Notification.id)).group_by(Notification.priority).all())
        return jsonify(
            {
                "total": Notification.query.count(),
                "unread": Notification.query.filter_by(is_read=False).count(),
                "pinned": Notification.query.filter_by(is_pinned=True).count(),
                "by_type": {k: int(v) for k, v in by_type.items()},
                "by_priority": {k: int(v) for k, v in by_priority.items()},
            }
        )

    @app.delete("/admin/notifications/cleanup")
    @require_auth(role="admin")
    def cleanup_notifications():
        now = utcnow()
        cutoff = now - timedelta(days=app.config["NOTIFICATION_RETENTION_DAYS"])
        expired = Notification.query.filter(Notification.expires_at.isnot(None), Notification.expires_at < now).delete(
            synchronize_session=False
        )
        old_read = Notification.query.filter(Notification.is_read.is_(True), Notification.created_at < cutoff).delete(
            synchronize_session=False
        )
        db.session.commit()
        log_admin_action(request.current_user.id, "notification_cleanup")
        return jsonify(
            {
                "expired_removed": int(expired or 0),
                "old_read_removed": int(old_read or 0),
                "retention_days": app.config["NOTIFICATION_RETENTION_DAYS"],
            }
        )

    # Admin analytics

    @app.get("/admin/dashboard")
    @require_auth(role="admin")
    def admin_dashboard():
        now = utcnow()
        day_start = datetime.combine(now.date(), datetime.min.time(), tzinfo=timezone.utc)
        completed = Purchase.query.filter(Purchase.status == "completed")
        total_revenue, avg_value, min_value, max_value = (
            db.session.query(
                func.coalesce(func.sum(Purchase.amount), 0),
                func.avg(Purchase.amount),
                func.min(Purchase.amount),
                func.max(Purchase.amount),
            )
            .filter(Purchase.status == "completed")
            .one()
        )
        revenue_today = (
            db.session.query(func.coalesce(func.sum(Purchase.amount), 0))
            .filter(Purchase.status == "completed", Purchase.purchased_at >= day_start)
            .scalar()
        )
        recent_purchases = completed.order_by(Purchase.purchased_at.desc()).limit(5).all()
        recent_reviews = Review.query.filter_by(is_hidden=False).order_by(Review.created_at.desc()).limit(5).all()
        active_users = User.query.filter(User.last_login_at.isnot(None)).order_by(User.last_login_at.desc()).limit(5).all()
        return jsonify(
            {
                "overview": {
                    "total_users": User.query.count(),
                    "total_books": Book.query.count(),
                    "total_purchases": completed.count(),
                    "total_reviews": Review.query.count(),
                    "total_downloads": DownloadRecord.query.count(),
                    "total_wishlist_items": WishlistEntry.query.count(),
                    "total_notifications": Notification.query.count(),
                    "reported_reviews": Review.query.filter(Review.report_count > 0).count(),
                    "suspended_users": User.query.filter_by(is_suspended=True).count(),
                },
                "financial": {
                    "total_revenue": round(float(total_revenue or 0), 2),
                    "avg_purchase_value": round(float(avg_value), 2) if avg_value is not None else 0.0,
                    "min_purchase": float(min_value) if min_value is not None else 0.0,
                    "max_purchase": float(max_value) if max_value is not None else 0.0,
                },
                "today": {
                    "new_users": User.query.filter(User.created_at >= day_start).count(),
                    "new_purchases": completed.filter(Purchase.purchased_at >= day_start).count(),
                    "revenue_today": round(float(revenue_today or 0), 2),
                    "new_downloads": DownloadRecord.query.filter(DownloadRecord.downloaded_at >= day_start).count(),
                },
                "recent_activity": {
                    "purchases": [purchase_to_dict(p) for p in recent_purchases],
                    "reviews": [review_to_dict(r) for r in recent_reviews],
                    "active_users": [
                        {"id": u.id, "display_name": u.display_name, "email": u.email, "last_login_at": isoformat(u.last_login_at)}
                        for u in active_users
                    ],
                },
            }
        )

    @app.get("/admin/analytics")
    @require_auth(role="admin")
    def admin_analytics():
        granularity = (request.args.get("granularity") or "daily").lower()
        if granularity not in GRANULARITY_FORMATS:
            return validation_error({"granularity": f"Must be one of: {', '.join(GRANULARITY_FORMATS)}."})
        start_raw = request.args.get("start_date")
        end_raw = request.args.get("end_date")
        try:
            start = parse_iso_datetime(start_raw) if start_raw else None
            end = parse_iso_datetime(end_raw) if end_raw else None
        except ValueError:
            return jsonify({"error": "Invalid date format. Use ISO-8601."}), 400

        def in_range(column, query):
            if start:
                query = query.filter(column >= start)
            if end:
                query = query.filter(column <= end)
            return query

        user_growth = {}
        for (created_at,) in in_range(User.created_at, db.session.query(User.created_at)).all():
            key = bucket_key(created_at, granularity)
            user_growth[key] = user_growth.get(key, 0) + 1

        sales = {}
        for purchased_at, amount in in_range(
            Purchase.purchased_at,
            db.session.query(Purchase.purchased_at, Purchase.amount).filter(Purchase.status == "completed"),
        ).all():
            bucket = sales.setdefault(bucket_key(purchased_at, granularity), {"count": 0, "revenue": 0.0})
            bucket["count"] += 1
            bucket["revenue"] = round(bucket["revenue"] + amount, 2)

        downloads = {}
        for downloaded_at, download_type in in_range(
            DownloadRecord.downloaded_at,
            db.session.query(DownloadRecord.downloaded_at, DownloadRecord.download_type),
        ).all():
            bucket = downloads.setdefault(bucket_key(downloaded_at, granularity), {"count": 0, "free": 0, "purchased": 0})
            bucket["count"] += 1
            bucket[download_type] = bucket.get(download_type, 0) + 1

        genres = (
            db.session.query(Book.genre, func.count(Book.id), func.avg(Book.rating_average))
            .group_by(Book.genre)
            .order_by(func.count(Book.id).desc())
            .limit(10)
            .all()
        )
        active_cutoff = utcnow() - timedelta(days=30)
        roles = (
            db.session.query(
                User.role,
                func.count(User.id),
                func.sum(case((User.last_login_at > active_cutoff, 1), else_=0)),
            )
            .group_by(User.role)
            .all()
        )
        return jsonify(
            {
                "user_growth": [{"period": k, "count": v} for k, v in sorted(user_growth.items())],
                "sales_trends": [
                    {
                        "period": k,
                        "count": v["count"],
                        "revenue": v["revenue"],
                        "avg_value": round(v["revenue"] / v["count"], 2),
                    }
                    for k, v in sorted(sales.items())
                ],
                "download_activity": [dict(period=k, **v) for k, v in sorted(downloads.items())],
                "genre_distribution": [
                    {"genre": g, "count": int(c), "avg_rating": round(float(a), 1) if a is not None else 0.0}
                    for g, c, a in genres
                ],
                "user_roles": [{"role": r, "count": int(c), "active_users": int(a or 0)} for r, c, a in roles],
                "date_range": {"start": start_raw, "end": end_raw, "granularity": granularity},
            }
        )

    @app.get("/admin/analytics/sales")
    @require_auth(role="admin")
    def admin_sales_analytics():
        period = (request.args.get("period") or "30days").lower()
        days = SALES_PERIODS.get(period, 30)
        since = utcnow() - timedelta(days=days)
        in_period = (Purchase.status == "completed", Purchase.purchased_at >= since)

        per_day = {}
        for purchased_at, amount in db.session.query(Purchase.purchased_at, Purchase.amount).filter(*in_period).all():
            bucket = per_day.setdefault(bucket_key(purchased_at, "daily"), {"count": 0, "revenue": 0.0})
            bucket["count"] += 1
            bucket["revenue"] = round(bucket["revenue"] + amount, 2)

        top_rows = (
            db.session.query(Purchase.book_id, func.count(Purchase.id), func.sum(Purchase.amount))
            .filter(*in_period)
            .group_by(Purchase.book_id)
            .order_by(func.count(Purchase.id).desc(), func.sum(Purchase.amount).desc())
            .limit(10)
            .all()
        )
        return jsonify(
            {
                "period": period,
                "days": days,
                "sales_over_time": [{"date": k, **v} for k, v in sorted(per_day.items())],
                "top_books": [
                    {
                        "book_id": book_id,
                        "purchase_count": int(count),
                        "total_revenue": round(float(revenue or 0), 2),
                        "book": book_summary(db.session.get(Book, book_id)),
                    }
                    for book_id, count, revenue in top_rows
                ],
                "revenue_by_type": purchases_by_type(Purchase.purchased_at >= since),
            }
        )

    @app.get("/admin/analytics/users")
    @require_auth(role="admin")
    def admin_user_analytics():
        since = utcnow() - timedelta(days=30)
        signups = {}
        for (created_at,) in db.session.query(User.created_at).filter(User.created_at >= since).all():
            key = bucket_key(created_at, "daily")
            signups[key] = signups.get(key, 0) + 1
        top_spenders = User.query.filter(User.total_spent > 0).order_by(User.total_spent.desc()).limit(10).all()
        roles = dict(db.session.query(User.role, func.count(User.id)).group_by(User.role).all())
        return jsonify(
            {
                "signups": [{"date": k, "count": v} for k, v in sorted(signups.items())],
                "top_spenders": [
                    {"id": u.id, "display_name": u.display_name, "email": u.email, "total_spent": round(u.total_spent, 2)}
                    for u in top_spenders
                ],
                "roles": {k: int(v) for k, v in roles.items()},
                "suspended": User.query.filter_by(is_suspended=True).count(),
                "active_last_30_days": User.query.filter(User.last_login_at >= since).count(),
            }
        )

    @app.get("/admin/export/users")
    @require_auth(role="admin")
    def export_users_csv():
        users = User.query.order_by(User.created_at.desc()).all()
        return csv_response(
            "users.csv",
            ["user_id", "email", "display_name", "role", "is_suspended", "total_spent", "created_at", "last_login_at"],
            [
                [u.id, u.email, u.display_name, u.role, u.is_suspended, round(u.total_spent or 0, 2), isoformat(u.created_at), isoformat(u.last_login_at)]
                for u in users
            ],
        )

    @app.get("/admin/export/sales")
    @require_auth(role="admin")
    def export_sales_csv():
        rows = []
        for p in Purchase.query.order_by(Purchase.purchased_at.desc()).all():
            owner = db.session.get(User, p.user_id)
            book = db.session.get(Book, p.book_id)
            rows.append(
                [
                    p.id,
                    p.order_ref,
                    p.user_id,
                    owner.email if owner else None,
                    p.book_id,
                    book.title if book else None,
                    p.amount,
                    p.status,
                    isoformat(p.purchased_at),
                ]
            )
        return csv_response(
            "sales.csv",
            ["purchase_id", "order_ref", "user_id", "email", "book_id", "title", "amount", "status", "purchased_at"],
            rows,
        )

    @app.get("/admin/audit-logs")
    @require_auth(role="admin")
    def admin_audit_logs():
        logs = AuditLog.query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(100).all()
        return jsonify(
            [
                {
                    "admin_user_id": log.admin_user_id,
                    "action": log.action,
                    "ip_address": log.ip_address,
                    "device_info": log.device_info,
                    "created_at": isoformat(log.created_at),
                }
                for log in logs
            ]
        )

    @app.get("/admin/error-logs")
    @require_auth(role="admin")
    def list_error_logs():
        rows = ErrorLog.query.order_by(ErrorLog.created_at.desc(), ErrorLog.id.desc()).limit(500).all()
        return jsonify(
            [
                {
                    "id": r.id,
                    "source": r.source,
                    "severity": r.severity,
                    "message": r.message,
                    "created_at": isoformat(r.created_at),
                }
                for r in rows
            ]
        )

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=True)
