"""QR claim verification.

A claim token is printed as a QR code at a partner location. It encodes

    base64url(task_id + "|" + issued_at + "|" + base64url(hmac_sha256(secret, task_id + "|" + issued_at)))

where base64url is standard base64 with ``+`` -> ``-`` and ``/`` -> ``_``.
Claiming checks, in order: token structure, freshness, task lookup,
signature, geofence, recent claims; then pins a proof to IPFS and records
the claim and XP in one transaction.
"""
import re
import uuid
import hmac
import time
import base64
import hashlib
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from math import radians, cos, sin, asin, sqrt
from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from app import db
from models import User, Task, ClaimRecord, Nonce
from pinning import pin_json_to_ipfs, PinningError
from errors import (
    InvalidToken, TokenExpired, TaskNotFound, InvalidSignature, OutOfRange,
    AlreadyClaimed, ProofPersistenceFailed, ClaimPersistenceFailed,
)

EARTH_RADIUS_M = 6371000

PHOTO_SCORE_WEIGHTS = {'gps': 0.3, 'ai': 0.5, 'nonce': 0.2}
PHOTO_PASS_SCORE = 0.7

_TIMESTAMP_RE = re.compile(r'\d{1,12}', re.ASCII)


@dataclass(frozen=True)
class ClaimResult:
    xp_awarded: int
    proof_ipfs: str
    distance_m: float
    claim_id: int


def b64url_encode(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii').replace('+', '-').replace('/', '_')


def b64url_decode(text: str) -> bytes:
    text = text.strip().replace('-', '+').replace('_', '/')
    text += '=' * (-len(text) % 4)
    return base64.b64decode(text, validate=True)


def sign_payload(task_id: str, issued_at: str, secret: str) -> str:
    payload = f"{task_id}|{issued_at}".encode('utf-8')
    digest = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).digest()
    return b64url_encode(digest)


def encode_token(task_id: str, issued_at: int, secret: str) -> str:
    """Issue a claim token for a task, signed with its partner location's secret"""
    issued_at = str(int(issued_at))
    signature = sign_payload(task_id, issued_at, secret)
    return b64url_encode(f"{task_id}|{issued_at}|{signature}".encode('utf-8'))


def decode_token(token):
    """Split a claim token into (task_id, issued_at_text, signature).

    issued_at is returned as the exact text from the token because the
    signature covers that text, not its integer value.
    """
    if not isinstance(token, str) or not token.strip():
        raise InvalidToken()
    try:
        decoded = b64url_decode(token).decode('utf-8')
    except (binascii.Error, ValueError):
        raise InvalidToken()

    parts = decoded.split('|')
    if len(parts) != 3:
        raise InvalidToken()

    task_id, issued_at, signature = parts
    if not task_id or not signature or not _TIMESTAMP_RE.fullmatch(issued_at):
        raise InvalidToken()
    return task_id, issued_at, signature


def verify_signature(task_id: str, issued_at: str, signature: str, secret: str) -> bool:
    try:
        given = b64url_decode(signature)
    except (binascii.Error, ValueError):
        return False
    payload = f"{task_id}|{issued_at}".encode('utf-8')
    expected = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).digest()
    return hmac.compare_digest(expected, given)


def distance_meters(lat1, lon1, lat2, lon2):
    """Great-circle distance between two points in metres (Haversine)"""
    lat1, lon1, lat2, lon2 = map(radians, (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(a)))
    return EARTH_RADIUS_M * c


def within_geofence(distance, radius_m, tolerance_m=0):
    return distance <= radius_m + tolerance_m


def _utc(epoch_seconds):
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).replace(tzinfo=None)


def has_recent_claim(user_id, task_id, now):
    window = timedelta(hours=current_app.config['CLAIM_WINDOW_HOURS'])
    since = _utc(now) - window
    existing = ClaimRecord.query.filter(
        ClaimRecord.user_id == user_id,
        ClaimRecord.task_id == task_id,
        ClaimRecord.claimed_at >= since,
    ).first()
    return existing is not None


def record_claim(user_id, task, method, lat, lon, distance, now, device_meta=None, proof_ipfs=None, extra=()):
    """Insert a claim and credit its XP in one transaction.

    ``extra`` are further rows committed with the claim. A unique constraint
    violation means a concurrent claim won the race and is reported as
    AlreadyClaimed; nothing is persisted in either failure case.
    """
    record = ClaimRecord(
        user_id=user_id,
        task_id=task.id,
        method=method,
        claimed_at=_utc(now),
        claim_window=int(now) // (current_app.config['CLAIM_WINDOW_HOURS'] * 3600),
        lat=lat,
        lon=lon,
        distance_m=distance,
        device_meta=device_meta,
        proof_ipfs=proof_ipfs,
        xp_awarded=task.xp_reward,
    )
    try:
        db.session.add(record)
        for row in extra:
            db.session.add(row)
        updated = User.query.filter_by(id=user_id).update({User.xp: User.xp + task.xp_reward})
        if not updated:
            raise ClaimPersistenceFailed('User profile not found')
        user = db.session.get(User, user_id)
        user.update_level()
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logging.info(f"Duplicate claim rejected by constraint: user={user_id} task={task.id}")
        raise AlreadyClaimed()
    except ClaimPersistenceFailed:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logging.error(f"Error recording claim user={user_id} task={task.id}: {e}")
        raise ClaimPersistenceFailed() from e
    return record


def issue_nonce(user_id, task_id, now=None):
    """Store a single-use nonce binding a photo submission to this user and task"""
    now = now or datetime.utcnow()
    nonce = Nonce(
        user_id=user_id,
        task_id=task_id,
        nonce=f"{uuid.uuid4()}-{int(time.time() * 1000)}",
        expires_at=now + timedelta(seconds=current_app.config['NONCE_TTL_SECONDS']),
    )
    db.session.add(nonce)
    db.session.commit()
    return nonce


def consume_nonce(user_id, task_id, value, now=None):
    """Mark an unused, unexpired nonce as used. The caller commits."""
    if not value:
        return False
    now = now or datetime.utcnow()
    nonce = Nonce.query.filter_by(
        user_id=user_id, task_id=task_id, nonce=value, used=False,
    ).filter(Nonce.expires_at > now).first()
    if nonce is None:
        return False
    nonce.used = True
    return True


@dataclass(frozen=True)
class PhotoAssessment:
    score: float
    verified: bool
    suspicious: bool
    status: str


def assess_photo(gps_verified, verdict, nonce_verified):
    """Combine location, AI verdict and nonce into a weighted score.

    A photo is verified only when every signal passes and the score reaches
    PHOTO_PASS_SCORE. A failed location or nonce, or a weak AI confidence,
    sends a non-verified photo to manual review instead of rejecting it.
    """
    ai_verified = verdict.verified and verdict.confidence > 0.5
    score = (
        PHOTO_SCORE_WEIGHTS['gps'] * gps_verified
        + PHOTO_SCORE_WEIGHTS['ai'] * ai_verified
        + PHOTO_SCORE_WEIGHTS['nonce'] * nonce_verified
    )
    score = round(score, 2)
    verified = bool(score >= PHOTO_PASS_SCORE and gps_verified and ai_verified)
    suspicious = not gps_verified or not nonce_verified or verdict.confidence < 0.6
    if verified:
        status = 'verified'
    elif suspicious:
        status = 'pending_review'
    else:
        status = 'rejected'
    return PhotoAssessment(score=score, verified=verified, suspicious=suspicious, status=status)


def claim(user_id, token, lat, lon, device_meta=None, now=None):
    """Verify a scanned claim token and award the task's XP to ``user_id``"""
    task_id, issued_at_text, signature = decode_token(token)
    issued_at = int(issued_at_text)

    if now is None:
        now = int(time.time())
    if abs(now - issued_at) > current_app.config['CLAIM_TOKEN_MAX_AGE_SECONDS']:
        raise TokenExpired()

    task = db.session.get(Task, task_id)
    if task is None or task.partner_location is None:
        raise TaskNotFound()
    location = task.partner_location

    if not verify_signature(task_id, issued_at_text, signature, location.qr_secret):
        logging.warning(f"Invalid claim signature for task {task_id} from user {user_id}")
        raise InvalidSignature()

    distance = distance_meters(lat, lon, location.lat, location.lon)
    allowed = location.radius_m + current_app.config['GEOFENCE_TOLERANCE_M']
    if not within_geofence(distance, allowed):
        raise OutOfRange(distance=round(distance), required=allowed)

    if has_recent_claim(user_id, task_id, now):
        raise AlreadyClaimed()

    proof = {
        'type': 'qr_claim',
        'user_id': user_id,
        'task_id': task_id,
        'timestamp': issued_at,
        'claim_timestamp': now,
        'lat': lat,
        'lon': lon,
        'distance_meters': round(distance),
        'device_meta': device_meta,
    }
    try:
        proof_ipfs = pin_json_to_ipfs(proof)
    except PinningError as e:
        logging.error(f"Proof pinning failed for user={user_id} task={task_id}: {e}")
        raise ProofPersistenceFailed() from e
    logging.info(f"Proof pinned to IPFS: {proof_ipfs}")

    record = record_claim(
        user_id, task, 'qr', lat, lon, distance, now,
        device_meta=device_meta, proof_ipfs=proof_ipfs,
    )
    logging.info(f"QR claim recorded: user={user_id} task={task_id} xp={task.xp_reward}")
    return ClaimResult(
        xp_awarded=task.xp_reward,
        proof_ipfs=proof_ipfs,
        distance_m=distance,
        claim_id=record.id,
    )
