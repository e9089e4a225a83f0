from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from songless import db
from songless.identity import authenticate, sanitize_avatar_key
from songless.models import User

main = Blueprint('main', __name__)


@main.route('/register', methods=['POST'])
def register():
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    if not username or not password:
        return jsonify({'error': 'Missing username or password'}), 400

    if User.query.filter_by(username=username).first():
        return jsonify({'error': 'Username already exists'}), 400

    user = User(
        username=username,
        display_name=(data.get('displayName') or username).strip()[:64],
        avatar_key=sanitize_avatar_key(data.get('avatarKey')),
    )
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    login_user(user, remember=True)

    return jsonify({'user': user.to_dict()}), 201


@main.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    user = authenticate(data.get('username'), data.get('password'))
    if user is None:
        return jsonify({'error': 'Invalid username or password'}), 401
    login_user(user, remember=True)
    return jsonify({'user': user.to_dict()})


@main.route('/me', methods=['GET'])
@login_required
def me():
    return jsonify({'user': current_user.to_dict()})


@main.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out successfully.'})
