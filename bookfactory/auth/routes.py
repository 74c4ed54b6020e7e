from flask import current_app, jsonify
from flask_login import current_user, login_required, logout_user

from ..errors import error_response, validation_error
from ..extensions import db
from ..models import User
from . import bp
from .forms import LoginForm, RegistrationForm


@bp.route("/register", methods=["POST"])
def register():
    form = RegistrationForm()
    if not form.validate_on_submit():
        return validation_error(form)

    user = User(email=form.email.data.lower(), display_name=form.display_name.data)
    user.set_password(form.password.data)
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("Registered user %s", user.id)
    return jsonify({"user": user.to_dict()}), 201


@bp.route("/login", methods=["POST"])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        return validation_error(form)

    user = User.query.filter_by(email=form.email.data.lower()).first()
    if not user or not user.check_password(form.password.data):
        return error_response("Invalid email or password.", 401)

    token = user.issue_token()
    db.session.commit()
    return jsonify({"token": token, "user": user.to_dict()})


@bp.route("/logout", methods=["POST"])
@login_required
def logout():
    current_user.revoke_token()
    logout_user()
    db.session.commit()
    return jsonify({"status": "signed_out"})


@bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})
