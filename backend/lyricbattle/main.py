from flask import Blueprint, request, jsonify, current_app
from flask_login import login_user, logout_user, login_required
from sqlalchemy.exc import IntegrityError
from lyricbattle.models import Account
from lyricbattle.services import ledger

main = Blueprint('main', __name__)


@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the Lyric Battle server!'})


@main.route('/health')
def health():
    return jsonify({'status': 'healthy'})


@main.route('/register', methods=['POST'])
def register():
    data = request.get_json(silent=True) or {}
    if not data.get('username') or not data.get('password'):
        return jsonify({'error': 'Missing username or password'}), 400

    if Account.query.filter_by(username=data['username']).first():
        return jsonify({'error': 'Username already exists'}), 400

    try:
        account = ledger.open_account(data['username'], data['password'], current_app.config.get('STARTING_CREDITS', 0))
    except IntegrityError:
        return jsonify({'error': 'Username already exists'}), 400
    login_user(account, remember=True)
    return jsonify({'message': 'Account created successfully', 'account': account.to_dict()}), 201


@main.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    account = Account.query.filter_by(username=data.get('username')).first()
    if account and account.check_password(data.get('password') or ''):
        login_user(account, remember=True)
        return jsonify({'message': 'Logged in successfully.', 'account': account.to_dict()})
    return jsonify({'error': 'Invalid username or password'}), 401


@main.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out successfully.'})
