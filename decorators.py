from functools import wraps
from flask import jsonify
from flask_login import current_user


def permission_required(permission_name):
    """
    Check the caller's role permissions before running an admin endpoint.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # 1. Identity is mandatory
            if not current_user.is_authenticated:
                return jsonify(error='Unauthorized', message='Authentication required'), 401

            # 2. Admin role or the specific permission
            if current_user.has_permission(permission_name):
                return f(*args, **kwargs)

            # 3. Access denied
            return jsonify(error='PermissionDenied',
                           message=f'Permission {permission_name} is required'), 403

        return decorated_function
    return decorator
