# run.py
import os
from datetime import datetime, timezone
from decimal import Decimal
from palenque import create_app, db
from palenque.errors import ServiceError
from palenque.models import User, Wallet, WalletTransaction, Event, Fight, USER_ROLES, ZERO
from palenque.services import user_service
from palenque.api.settlement import settle_bets_for_fight
import click


# Get config name from environment variable or default to 'development'
config_name = os.getenv('FLASK_ENV', 'development')
app = create_app(config_name)


def _make_user(username, email, password, role, balance=ZERO):
    user = User(username=username, email=email, role=role)
    user.set_password(password)
    db.session.add(user)
    db.session.flush()
    wallet = Wallet(user_id=user.user_id, balance=balance, frozen_amount=ZERO)
    db.session.add(wallet)
    db.session.flush()
    if balance > 0:
        db.session.add(WalletTransaction(
            wallet_id=wallet.wallet_id, type='deposit', amount=balance, status='completed',
            description='Demo opening balance', details={'payment_method': 'seed'},
        ))
    return user


def _create_account(username, email, password, role):
    try:
        user = user_service.create_user(username, email, password, role=role)
    except ServiceError as e:
        raise click.ClickException(e.message)
    click.echo(f"{role.capitalize()} '{user.username}' created with ID {user.user_id}.")


@app.cli.command("create_admin")
@click.option('--username', required=True, help="Admin username.")
@click.option('--email', required=True, help="Admin email.")
@click.option('--password', required=True, help="Admin password.")
def create_admin(username, email, password):
    """Creates an admin account (admins cannot self-register)."""
    with app.app_context():
        _create_account(username, email, password, 'admin')


@app.cli.command("create_user")
@click.option('--username', required=True, help="Username.")
@click.option('--email', required=True, help="Email.")
@click.option('--password', required=True, help="Password.")
@click.option('--role', type=click.Choice(USER_ROLES), default='operator', show_default=True, help="Account role.")
def create_user(username, email, password, role):
    """Creates an account with any role, e.g. an operator to run events."""
    with app.app_context():
        _create_account(username, email, password, role)


@app.cli.command("seed_demo")
@click.option('--balance', default='1000', help="Opening balance for each demo bettor.")
def seed_demo(balance):
    """
    Creates an operator, two bettors with funded wallets and an event
    with three upcoming fights.
    """
    with app.app_context():
        if User.find_by_username('demo_operator'):
            click.echo("Demo data already present.")
            return
        opening = Decimal(balance).quantize(Decimal('0.01'))
        operator = _make_user('demo_operator', 'operator@palenque.local', 'operator123', 'operator')
        _make_user('demo_red', 'red@palenque.local', 'bettor123', 'user', opening)
        _make_user('demo_blue', 'blue@palenque.local', 'bettor123', 'gallera', opening)

        event = Event(name='Demo Derby', venue='Palenque Central',
                      scheduled_date=datetime.now(timezone.utc), operator_id=operator.user_id)
        db.session.add(event)
        db.session.flush()
        for number, (red, blue) in enumerate([('El Giro', 'Colorado'), ('Cenizo', 'Pinto'),
                                               ('Canelo', 'Jabado')], start=1):
            db.session.add(Fight(event_id=event.event_id, number=number, red_corner=red, blue_corner=blue))
        event.total_fights = 3
        db.session.commit()
        click.echo(f"Seeded event {event.event_id} with 3 fights; bettors demo_red and demo_blue hold {opening} each.")


@app.cli.command("settle_fight")
@click.argument('fight_id', type=int)
@click.argument('result')
def settle_fight(fight_id, result):
    """Settles a live fight from the command line (red, blue, draw or cancelled)."""
    with app.app_context():
        success, message = settle_bets_for_fight(fight_id, result)
        click.echo(message)
        if not success:
            raise SystemExit(1)


# --- Main execution ---
if __name__ == '__main__':
    # For production, use a WSGI server like Gunicorn or Waitress.
    app.run(host='0.0.0.0', port=5000)
