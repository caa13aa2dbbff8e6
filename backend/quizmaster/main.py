from flask import Blueprint, jsonify

from quizmaster.models import isoformat, utcnow

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the Quizmaster game server!', 'server_time': isoformat(utcnow())})
