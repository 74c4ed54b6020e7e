from wtforms import PasswordField, StringField
from wtforms.validators import DataRequired, Email, Length, ValidationError

from ..forms import ApiForm, strip_value
from ..models import User


class RegistrationForm(ApiForm):
    display_name = StringField(
        "Display name",
        name="displayName",
        validators=[DataRequired(), Length(max=120)],
        filters=[strip_value],
    )
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)], filters=[strip_value])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=8, max=128)])

    def validate_email(self, field: StringField) -> None:
        if User.query.filter_by(email=field.data.lower()).first():
            raise ValidationError("An account with that email already exists.")


class LoginForm(ApiForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)], filters=[strip_value])
    password = PasswordField("Password", validators=[DataRequired()])
