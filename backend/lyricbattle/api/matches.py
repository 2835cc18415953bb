from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from lyricbattle.models import MatchEvent
from lyricbattle.services import registry
from lyricbattle.services.policy import MatchPolicy


matches = Blueprint('matches', __name__)


@matches.route('/settings', methods=['GET'])
def match_settings():
    """Policy new matches are created with, so clients can render stake limits and countdowns."""
    return jsonify(MatchPolicy.from_config(current_app.config).as_dict())


@matches.route('/open', methods=['GET'])
@login_required
def open_matches():
    return jsonify([m.to_dict(viewer_id=current_user.id) for m in registry.list_open_matches()])


@matches.route('/active', methods=['GET'])
@login_required
def active_matches():
    return jsonify([m.to_dict(viewer_id=current_user.id) for m in registry.list_active_matches(current_user.id)])


@matches.route('/create', methods=['POST'])
@login_required
def create_match():
    data = request.get_json(silent=True) or {}
    if data.get('stake') is None:
        return jsonify({'error': 'Stake is required', 'code': 'invalid_stake'}), 400
    match = registry.create_match(current_user.id, data.get('stake'))
    return jsonify({
        'message': 'New match created!',
        'match_id': match.id,
        'match': match.to_dict(viewer_id=current_user.id),
    }), 201


@matches.route('/<int:match_id>/join', methods=['POST'])
@login_required
def join_match(match_id):
    match = registry.join_match(match_id, current_user.id)
    return jsonify(match.to_dict(viewer_id=current_user.id))


@matches.route('/<int:match_id>/answer', methods=['POST'])
@login_required
def submit_answer(match_id):
    data = request.get_json(silent=True) or {}
    answer = data.get('answer')
    if not isinstance(answer, str):
        return jsonify({'error': 'Answer text is required', 'code': 'invalid_answer'}), 400
    match = registry.submit_answer(match_id, current_user.id, answer)
    return jsonify({'message': 'Answer submitted', 'match': match.to_dict(viewer_id=current_user.id)})


@matches.route('/<int:match_id>/cancel', methods=['POST'])
@login_required
def cancel_match(match_id):
    match = registry.cancel_match(match_id, account_id=current_user.id)
    return jsonify(match.to_dict(viewer_id=current_user.id))


@matches.route('/<int:match_id>', methods=['GET'])
@login_required
def get_match(match_id):
    return jsonify(registry.get_match_view(match_id, viewer_id=current_user.id))


@matches.route('/<int:match_id>/events', methods=['GET'])
@login_required
def match_events(match_id):
    view = registry.get_match_view(match_id, viewer_id=current_user.id)
    if view['status'] not in ('completed', 'cancelled'):
        return jsonify({'error': 'Replay is available once the match is over', 'code': 'match_not_finished'}), 409
    events = MatchEvent.query.filter_by(match_id=match_id).order_by(MatchEvent.id).all()
    return jsonify([e.to_dict() for e in events])
