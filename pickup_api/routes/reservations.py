from flask import Blueprint, request, jsonify
from pickup_api.services import booking_engine
from pickup_api.services.validation import request_ip

reservations_bp = Blueprint('reservations', __name__)


@reservations_bp.route('', methods=['POST'])
def create_reservation():
    """Reserve spots paying cash / CashApp at the field."""
    data = request.get_json(silent=True)
    result = booking_engine.reserve(data, request_ip(request))
    return jsonify(result), 201


@reservations_bp.route('/checkout', methods=['POST'])
def create_checkout():
    """Open a card payment session; the reservation is made by the webhook."""
    data = request.get_json(silent=True)
    result = booking_engine.initiate_checkout(data, request_ip(request))
    return jsonify(result)


@reservations_bp.route('/mine', methods=['GET'])
def get_my_reservations():
    rsvps = booking_engine.reservations_for_email(request.args.get('email'))
    return jsonify({'rsvps': rsvps})


@reservations_bp.route('/<code>', methods=['GET'])
def get_reservation(code):
    return jsonify(booking_engine.lookup_reservation(code, request.args.get('email')))


@reservations_bp.route('/<code>/cancel', methods=['POST'])
def cancel_reservation(code):
    data = request.get_json(silent=True) or {}
    return jsonify(booking_engine.cancel(code, data.get('email')))
