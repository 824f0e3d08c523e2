import time
import secrets
import logging
import click
from app import app, db
from models import PartnerLocation, Task
from claims import encode_token

default_tasks = [
    {
        'title': 'Coffee Stop Check-in',
        'description': 'Run to the partner cafe and scan the QR code at the counter.',
        'type': 'qr',
        'city': 'New York',
        'xp_reward': 25,
    },
    {
        'title': 'Park Loop Selfie',
        'description': 'Take a photo at the park entrance after your run.',
        'type': 'photo',
        'city': 'New York',
        'xp_reward': 15,
        'lat': 40.7831,
        'lon': -73.9712,
        'radius_m': 75,
        'verification_prompt': 'Does this image show someone outdoors at a park entrance?',
    },
    {
        'title': 'Community Garden Volunteer',
        'description': 'Help at a community garden and document your contribution.',
        'type': 'photo',
        'city': 'New York',
        'xp_reward': 30,
        'lat': 40.7614,
        'lon': -73.9776,
        'radius_m': 50,
        'verification_prompt': 'Does this image show someone working in or helping with a community garden?',
    },
]


@app.cli.command('issue-qr-token')
@click.argument('task_id')
@click.option('--issued-at', type=int, default=None, help='Unix timestamp to sign (defaults to now).')
def issue_qr_token(task_id, issued_at):
    """Print a claim token for TASK_ID signed with its partner location secret."""
    task = db.session.get(Task, task_id)
    if task is None or task.partner_location is None:
        raise click.ClickException(f'Task {task_id} not found or has no partner location')
    if issued_at is None:
        issued_at = int(time.time())
    click.echo(encode_token(task.id, issued_at, task.partner_location.qr_secret))


@app.cli.command('seed-demo')
def seed_demo():
    """Create a demo partner location and tasks if there are no tasks yet."""
    if Task.query.count() > 0:
        click.echo('Tasks already exist; nothing to seed.')
        return

    location = PartnerLocation(
        name='Central Perk',
        sponsor_name='Strun Partners',
        lat=40.7589,
        lon=-73.9851,
        radius_m=50,
        qr_secret=secrets.token_urlsafe(32),
    )
    db.session.add(location)
    for task_data in default_tasks:
        task = Task(**task_data)
        if task.type == 'qr':
            task.partner_location = location
        db.session.add(task)
    db.session.commit()
    logging.info("Demo tasks created")
    click.echo(f'Seeded {len(default_tasks)} tasks at partner location {location.id}')
