from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    flask_app.logger.setLevel(flask_app.config.get('LOG_LEVEL', 'INFO'))

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from lyricbattle.main import main
    flask_app.register_blueprint(main)

    from lyricbattle.api.matches import matches
    flask_app.register_blueprint(matches, url_prefix='/api/matches')

    from lyricbattle.api.accounts import accounts
    flask_app.register_blueprint(accounts, url_prefix='/api/accounts')

    from lyricbattle.errors import GameError

    @flask_app.errorhandler(GameError)
    def handle_game_error(exc):
        if exc.status_code >= 500:
            flask_app.logger.warning(f"[error] {exc.code}: {exc}")
        return jsonify({'error': str(exc), 'code': exc.code}), exc.status_code

    from lyricbattle.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    # No-op under TESTING; tests drive sweep_matches directly
    from lyricbattle.services.clock import start_sweeper
    start_sweeper(flask_app)

    from lyricbattle.models import Account

    @login_manager.user_loader
    def load_user(account_id):
        return db.session.get(Account, int(account_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Login required', 'code': 'unauthorized'}), 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from lyricbattle.models import Prompt
        from lyricbattle.services import ledger
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            for username in ['player1', 'player2', 'player3']:
                ledger.open_account(username, 'password', flask_app.config['STARTING_CREDITS'])

            seed_prompts = [
                ('Walking on Sunshine', 'Katrina and the Waves', "I'm walking on ____, whoa-oh", 'sunshine'),
                ('Yellow Submarine', 'The Beatles', 'We all live in a yellow ____', 'submarine'),
                ('Bohemian Rhapsody', 'Queen', 'Is this the real life? Is this just ____?', 'fantasy'),
            ]
            for title, artist, snippet, answer in seed_prompts:
                db.session.add(Prompt(title=title, artist=artist, lyrics_snippet=snippet, answer=answer))
            db.session.commit()
            click.echo('Database has been reset and seeded!')

    @click.command('sweep-matches')
    def sweep_matches_command():
        """Expire overdue matches, cancel stale lobbies and retry unfinished settlements."""
        from lyricbattle.services.clock import sweep_matches
        with flask_app.app_context():
            counts = sweep_matches()
            click.echo(', '.join(f'{k}={v}' for k, v in counts.items()))

    @click.command('ledger-audit')
    def ledger_audit_command():
        """Reconcile every account balance against its ledger entries."""
        from lyricbattle.services import ledger
        with flask_app.app_context():
            mismatches = 0
            for account in Account.query.order_by(Account.id).all():
                report = ledger.reconcile(account.id)
                if not report['balanced']:
                    mismatches += 1
                    click.echo(f"account={account.id} balance={report['balance']} ledger={report['ledger_total']}")
            click.echo(f'{mismatches} mismatched account(s)')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(sweep_matches_command)
    flask_app.cli.add_command(ledger_audit_command)

    return flask_app
