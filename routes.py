import os
import json
import math
import time
import uuid
import logging
import mimetypes
from datetime import datetime
from flask import request, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename
from PIL import Image
from sqlalchemy.exc import IntegrityError
from app import app, db
from models import User, Task, ClaimRecord, TaskParticipation, PhotoSubmission
from auth import get_current_user
from claims import (
    claim, distance_meters, has_recent_claim, record_claim, issue_nonce, consume_nonce, assess_photo,
)
from gemini import verify_task_photo, PhotoVerificationError
from errors import (
    StrunError, InvalidRequest, TaskNotFound, TaskUnavailable, DailyLimitReached,
    OutOfRange, AlreadyClaimed, PhotoVerificationFailed,
)

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif'}

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
}

def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS

def parse_coordinate(value, name):
    if isinstance(value, bool) or value is None or value == '':
        raise InvalidRequest(f'Missing {name}')
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f'Invalid {name}')
    if not math.isfinite(number):
        raise InvalidRequest(f'Invalid {name}')
    return number

@app.after_request
def add_cors_headers(response):
    response.headers.update(CORS_HEADERS)
    return response

@app.errorhandler(StrunError)
def handle_strun_error(e):
    return jsonify(e.to_dict()), e.status_code

@app.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return e
    logging.exception(f"Unhandled error on {request.path}")
    return jsonify({'error': str(e) or 'Unknown error'}), 500

@app.route('/api/qr-claim', methods=['POST'])
def qr_claim():
    user = get_current_user()
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidRequest('Expected a JSON body')

    token = body.get('token')
    if not isinstance(token, str) or not token:
        raise InvalidRequest('Missing token')
    lat = parse_coordinate(body.get('lat'), 'lat')
    lon = parse_coordinate(body.get('lon'), 'lon')

    result = claim(user.id, token, lat, lon, device_meta=body.get('device_meta'))
    return jsonify({
        'status': 'success',
        'xp_awarded': result.xp_awarded,
        'proof_ipfs': result.proof_ipfs,
        'distance': round(result.distance_m),
    })

@app.route('/api/tasks')
def list_tasks():
    status = request.args.get('status', 'published')
    city = request.args.get('city')
    query = Task.query.filter_by(status=status)
    if city:
        query = query.filter(Task.city.ilike(f'%{city}%'))
    tasks = query.order_by(Task.created_at.desc()).limit(200).all()
    return jsonify({'tasks': [task.to_dict() for task in tasks]})

@app.route('/api/tasks/nearby', methods=['POST'])
def nearby_tasks():
    body = request.get_json(silent=True) or {}
    lat = parse_coordinate(body.get('lat'), 'lat')
    lon = parse_coordinate(body.get('lon'), 'lon')
    radius_km = body.get('radius_km', 10)
    if isinstance(radius_km, bool) or not isinstance(radius_km, (int, float)) or not math.isfinite(radius_km):
        raise InvalidRequest('Invalid radius_km')

    now = datetime.utcnow()
    nearby = []
    for task in Task.query.filter_by(status='published').all():
        center = task.center()
        if center is None or not task.is_active(now) or task.is_full():
            continue
        distance = distance_meters(lat, lon, center[0], center[1])
        if distance > radius_km * 1000:
            continue
        task_data = task.to_dict()
        task_data['distance_meters'] = round(distance)
        nearby.append(task_data)

    nearby.sort(key=lambda t: t['distance_meters'])
    return jsonify({'tasks': nearby})

@app.route('/api/tasks/<task_id>/join', methods=['POST'])
def join_task(task_id):
    user = get_current_user()
    limit = app.config['DAILY_JOIN_LIMIT']
    today = datetime.utcnow().date()
    accept_count = (user.daily_task_accept_count or 0) if user.last_accept_date == today else 0

    if accept_count >= limit:
        raise DailyLimitReached(f'Daily acceptance limit reached ({limit}/day)', limit_reached=True)

    task = db.session.get(Task, task_id)
    if task is None:
        raise TaskNotFound()

    now = datetime.utcnow()
    if task.active_from and task.active_from > now:
        raise TaskUnavailable('Task not yet active')
    if task.active_to and task.active_to < now:
        raise TaskUnavailable('Task has expired')
    if task.is_full():
        raise TaskUnavailable('Task is full')

    existing = TaskParticipation.query.filter_by(user_id=user.id, task_id=task_id).first()
    if existing:
        raise TaskUnavailable('Already joined this task', status=existing.status)

    participation = TaskParticipation(user_id=user.id, task_id=task_id, status='pending')
    db.session.add(participation)
    task.current_participants = (task.current_participants or 0) + 1
    user.daily_task_accept_count = accept_count + 1
    user.last_accept_date = today
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise TaskUnavailable('Already joined this task')

    logging.info(f"User {user.id} joined task {task_id}")
    return jsonify({
        'success': True,
        'participation': participation.to_dict(),
        'remaining_today': limit - (accept_count + 1),
    })

@app.route('/api/tasks/<task_id>/nonce', methods=['POST'])
def request_nonce(task_id):
    user = get_current_user()
    if db.session.get(Task, task_id) is None:
        raise TaskNotFound()

    nonce = issue_nonce(user.id, task_id)
    return jsonify({
        'nonce': nonce.nonce,
        'expires_at': nonce.expires_at.isoformat(),
    })

@app.route('/api/tasks/<task_id>/photo', methods=['POST'])
def submit_task_photo(task_id):
    user = get_current_user()
    task = db.session.get(Task, task_id)
    if task is None:
        raise TaskNotFound()

    participation = TaskParticipation.query.filter_by(user_id=user.id, task_id=task_id).first()
    if participation is None:
        raise TaskUnavailable('Join this task before submitting a photo')

    now = int(time.time())
    if has_recent_claim(user.id, task_id, now):
        raise AlreadyClaimed()

    lat = parse_coordinate(request.form.get('lat'), 'lat')
    lon = parse_coordinate(request.form.get('lon'), 'lon')
    device_meta = None
    if request.form.get('device_meta'):
        try:
            device_meta = json.loads(request.form['device_meta'])
        except ValueError:
            raise InvalidRequest('Invalid device_meta')

    center = task.center()
    if center is None:
        raise TaskNotFound('Task has no location')

    if 'photo' not in request.files:
        raise InvalidRequest('No photo uploaded!')
    file = request.files['photo']
    if file.filename == '':
        raise InvalidRequest('No photo selected!')
    if not allowed_file(file.filename):
        raise InvalidRequest('Invalid file type. Please upload a valid image.')

    # Create unique filename
    filename = secure_filename(f"{uuid.uuid4().hex}_{file.filename}")
    filepath = os.path.join(app.config['UPLOAD_FOLDER'], filename)
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    file.save(filepath)
    try:
        with Image.open(filepath) as img:
            # Resize if too large
            if img.width > 1024 or img.height > 1024:
                img.thumbnail((1024, 1024), Image.Resampling.LANCZOS)
                img.save(filepath, optimize=True, quality=85)
    except OSError as e:
        os.remove(filepath)
        logging.error(f"Error processing image: {e}")
        raise InvalidRequest('Uploaded file is not a readable image')

    distance = distance_meters(lat, lon, center[0], center[1])
    if distance > center[2]:
        os.remove(filepath)
        raise OutOfRange('You are too far from the task location!', distance=round(distance), required=center[2])

    nonce_verified = consume_nonce(user.id, task_id, request.form.get('nonce'))
    if not nonce_verified:
        logging.warning(f"Photo for task {task_id} from user {user.id} has no valid nonce")

    submission = PhotoSubmission(
        user_id=user.id,
        task_id=task_id,
        image_path=filepath,
        lat=lat,
        lon=lon,
        distance_m=distance,
        device_meta=device_meta,
        nonce_verified=nonce_verified,
    )

    mime_type = mimetypes.guess_type(filepath)[0] or 'image/jpeg'
    try:
        verdict = verify_task_photo(filepath, task, mime_type=mime_type)
    except PhotoVerificationError as e:
        logging.error(f"Photo verification failed for task {task_id}: {e}")
        submission.status = 'rejected'
        submission.ai_reason = f"Verification failed: {e}"
        db.session.add(submission)
        db.session.commit()
        raise PhotoVerificationFailed()

    submission.ai_verified = verdict.verified
    submission.ai_confidence = verdict.confidence
    submission.ai_reason = verdict.reason
    assessment = assess_photo(distance <= center[2], verdict, nonce_verified)
    submission.status = assessment.status
    submission.suspicious = assessment.suspicious
    submission.verification_score = assessment.score
    participation.status = assessment.status

    if assessment.verified:
        submission.xp_awarded = task.xp_reward
        submission.verified_at = datetime.utcnow()
        record_claim(
            user.id, task, 'photo', lat, lon, distance, now,
            device_meta=device_meta, extra=[submission, participation],
        )
        logging.info(f"Photo task verified: user={user.id} task={task_id} xp={task.xp_reward}")
    else:
        db.session.add(submission)
        db.session.commit()
        logging.info(f"Photo task {assessment.status}: user={user.id} task={task_id} score={assessment.score}")

    return jsonify({
        'success': True,
        'verified': assessment.verified,
        'status': assessment.status,
        'score': assessment.score,
        'suspicious': assessment.suspicious,
        'nonce_verified': nonce_verified,
        'confidence': verdict.confidence,
        'reason': verdict.reason,
        'xp_earned': task.xp_reward if assessment.verified else 0,
        'distance_meters': round(distance),
    })

@app.route('/api/profile')
def profile():
    user = get_current_user()
    claims = ClaimRecord.query.filter_by(user_id=user.id).order_by(ClaimRecord.claimed_at.desc()).limit(20).all()
    return jsonify({
        **user.to_dict(),
        'rank': user.get_rank(),
        'claims': [record.to_dict() for record in claims],
    })

@app.route('/api/leaderboard')
def leaderboard():
    top_users = User.query.filter(User.xp > 0).order_by(User.xp.desc()).limit(20).all()
    return jsonify({'users': [user.to_dict() for user in top_users]})

@app.route("/status")
def status():
    return {
        "status": "ok",
        "database": app.config["SQLALCHEMY_DATABASE_URI"].split(":", 1)[0],
        "pinning": "configured" if app.config.get("PINATA_JWT") else "not configured",
    }
