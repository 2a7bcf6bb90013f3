from functools import wraps
from flask import g, jsonify


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not getattr(g, "current_user", None):
            return jsonify({"error": "Unauthenticated", "message": "X-User-Id header is required"}), 401
        return f(*args, **kwargs)
    return decorated_function


def roles_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if not user:
                return jsonify({"error": "Unauthenticated", "message": "X-User-Id header is required"}), 401
            if not user.has_role(*roles):
                return jsonify({"error": "Forbidden", "message": f"requires one of roles {list(roles)}"}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator
