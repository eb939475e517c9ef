# auth_utils.py
import hmac
import jwt
from flask import request, jsonify, current_app, g
from functools import wraps


def jwt_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = None

        # 从请求头获取 Authorization: Bearer <token>
        auth_header = request.headers.get('Authorization', None)
        if auth_header and auth_header.startswith('Bearer '):
            token = auth_header.split(' ')[1]
        else:
            return jsonify({'success': False, 'message': 'Missing authorization token'}), 401

        try:
            payload = jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=['HS256'])
        except jwt.ExpiredSignatureError:
            return jsonify({'success': False, 'message': 'Authorization token expired'}), 401
        except jwt.InvalidTokenError:
            return jsonify({'success': False, 'message': 'Invalid authorization token'}), 401

        user_id = payload.get('user_id') or payload.get('sub')
        if not user_id:
            return jsonify({'success': False, 'message': 'Invalid authorization token'}), 401
        g.current_user_id = str(user_id)

        return f(*args, **kwargs)
    return decorated_function


def admin_key_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('ADMIN_API_KEY')
        provided = request.headers.get('X-Admin-Key', '')
        if not expected or not hmac.compare_digest(provided, expected):
            return jsonify({'success': False, 'message': 'Forbidden'}), 403
        return f(*args, **kwargs)
    return decorated_function
