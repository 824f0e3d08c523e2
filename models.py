import uuid
from app import db
from datetime import datetime


def new_id():
    return str(uuid.uuid4())


class User(db.Model):
    # id is the identity provider's subject claim
    id = db.Column(db.String(64), primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False)
    email = db.Column(db.String(120))
    xp = db.Column(db.Integer, default=0, nullable=False)
    level = db.Column(db.String(20), default='Bronze')  # Bronze, Silver, Gold
    daily_task_accept_count = db.Column(db.Integer, default=0)
    last_accept_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    claims = db.relationship('ClaimRecord', backref='user', lazy=True)

    def update_level(self):
        """Update user level based on total XP"""
        if self.xp >= 200:
            self.level = 'Gold'
        elif self.xp >= 100:
            self.level = 'Silver'
        else:
            self.level = 'Bronze'

    def get_rank(self):
        """Get user's rank among all users"""
        users_above = User.query.filter(User.xp > self.xp).count()
        return users_above + 1

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'xp': self.xp,
            'level': self.level,
        }


class PartnerLocation(db.Model):
    __tablename__ = 'partner_locations'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(100), nullable=False)
    sponsor_name = db.Column(db.String(100))
    lat = db.Column(db.Float, nullable=False)
    lon = db.Column(db.Float, nullable=False)
    radius_m = db.Column(db.Integer, nullable=False, default=50)
    qr_secret = db.Column(db.String(128), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    tasks = db.relationship('Task', backref='partner_location', lazy=True)


class Task(db.Model):
    __tablename__ = 'tasks'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    type = db.Column(db.String(20), nullable=False, default='qr')  # qr, photo
    city = db.Column(db.String(100))
    status = db.Column(db.String(20), default='published')  # draft, published
    xp_reward = db.Column(db.Integer, nullable=False, default=0)
    lat = db.Column(db.Float)
    lon = db.Column(db.Float)
    radius_m = db.Column(db.Integer)
    verification_prompt = db.Column(db.Text)
    partner_location_id = db.Column(db.String(36), db.ForeignKey('partner_locations.id'))
    active_from = db.Column(db.DateTime)
    active_to = db.Column(db.DateTime)
    max_participants = db.Column(db.Integer)
    current_participants = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def center(self):
        """Return (lat, lon, radius_m) of the task site, or None if it has no coordinates"""
        if self.partner_location is not None:
            location = self.partner_location
            return location.lat, location.lon, location.radius_m
        if self.lat is None or self.lon is None:
            return None
        return self.lat, self.lon, self.radius_m or 30

    def is_active(self, now=None):
        now = now or datetime.utcnow()
        if self.active_from and self.active_from > now:
            return False
        if self.active_to and self.active_to < now:
            return False
        return True

    def is_full(self):
        return bool(self.max_participants) and (self.current_participants or 0) >= self.max_participants

    def to_dict(self):
        center = self.center()
        data = {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'type': self.type,
            'city': self.city,
            'status': self.status,
            'xp_reward': self.xp_reward,
            'lat': center[0] if center else None,
            'lon': center[1] if center else None,
            'radius_m': center[2] if center else None,
            'active_from': self.active_from.isoformat() if self.active_from else None,
            'active_to': self.active_to.isoformat() if self.active_to else None,
            'max_participants': self.max_participants,
            'current_participants': self.current_participants or 0,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if self.partner_location is not None:
            data['partner_location'] = {
                'id': self.partner_location.id,
                'name': self.partner_location.name,
                'sponsor_name': self.partner_location.sponsor_name,
            }
        return data


class ClaimRecord(db.Model):
    __tablename__ = 'claim_records'
    # claim_window is the epoch index of the CLAIM_WINDOW_HOURS bucket; the constraint backs the
    # duplicate-claim read check against concurrent requests
    __table_args__ = (
        db.UniqueConstraint('user_id', 'task_id', 'claim_window', name='uq_claim_user_task_window'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id'), nullable=False)
    method = db.Column(db.String(20), nullable=False)  # qr, photo
    claimed_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    claim_window = db.Column(db.Integer, nullable=False)
    lat = db.Column(db.Float, nullable=False)
    lon = db.Column(db.Float, nullable=False)
    distance_m = db.Column(db.Float)
    device_meta = db.Column(db.JSON)
    proof_ipfs = db.Column(db.String(200))
    xp_awarded = db.Column(db.Integer, nullable=False, default=0)

    task = db.relationship('Task')

    def to_dict(self):
        return {
            'id': self.id,
            'task_id': self.task_id,
            'method': self.method,
            'claimed_at': self.claimed_at.isoformat(),
            'distance_m': round(self.distance_m) if self.distance_m is not None else None,
            'proof_ipfs': self.proof_ipfs,
            'xp_awarded': self.xp_awarded,
        }


class TaskParticipation(db.Model):
    __tablename__ = 'task_participations'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'task_id', name='uq_participation_user_task'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id'), nullable=False)
    status = db.Column(db.String(20), default='pending')
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'task_id': self.task_id,
            'status': self.status,
            'joined_at': self.joined_at.isoformat() if self.joined_at else None,
        }


class PhotoSubmission(db.Model):
    __tablename__ = 'photo_submissions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id'), nullable=False)
    image_path = db.Column(db.String(200), nullable=False)
    lat = db.Column(db.Float, nullable=False)
    lon = db.Column(db.Float, nullable=False)
    distance_m = db.Column(db.Float)
    device_meta = db.Column(db.JSON)
    status = db.Column(db.String(20), default='pending')  # pending, verified, pending_review, rejected
    ai_verified = db.Column(db.Boolean)
    ai_confidence = db.Column(db.Float)
    ai_reason = db.Column(db.Text)
    xp_awarded = db.Column(db.Integer, default=0)
    submitted_at = db.Column(db.DateTime, default=datetime.utcnow)
    verified_at = db.Column(db.DateTime)
    suspicious = db.Column(db.Boolean, default=False)
    nonce_verified = db.Column(db.Boolean, default=False)
    verification_score = db.Column(db.Float)


class Nonce(db.Model):
    __tablename__ = 'nonces'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id'), nullable=False)
    nonce = db.Column(db.String(80), unique=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
