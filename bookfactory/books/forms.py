from wtforms import IntegerField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, NumberRange, Optional

from ..forms import ApiForm, strip_value


class BookForm(ApiForm):
    title = StringField("Title", validators=[DataRequired(), Length(max=200)], filters=[strip_value])
    description = TextAreaField("Description", validators=[Optional(), Length(max=5000)], filters=[strip_value])
    genre = StringField("Genre", validators=[Optional(), Length(max=80)], filters=[strip_value])


class BookUpdateForm(BookForm):
    title = StringField("Title", validators=[Optional(), Length(min=1, max=200)], filters=[strip_value])


class ChapterForm(ApiForm):
    title = StringField("Title", validators=[DataRequired(), Length(max=200)], filters=[strip_value])
    content = TextAreaField("Content", validators=[Optional()])
    order = IntegerField("Order", validators=[Optional(), NumberRange(min=1)])


class ChapterUpdateForm(ChapterForm):
    title = StringField("Title", validators=[Optional(), Length(min=1, max=200)], filters=[strip_value])
