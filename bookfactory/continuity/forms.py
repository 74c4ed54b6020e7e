from wtforms import BooleanField, IntegerField, StringField, TextAreaField
from wtforms.validators import AnyOf, DataRequired, InputRequired, Length, NumberRange, Optional

from ..forms import ApiForm, strip_value
from ..models import FACT_CATEGORIES, FACT_CONFIDENCE_LEVELS, FACT_SOURCES, IMPORTANCE_LEVELS


class FactForm(ApiForm):
    category = StringField("Category", validators=[Optional(), AnyOf(FACT_CATEGORIES)], filters=[strip_value])
    subject = StringField("Subject", validators=[DataRequired(), Length(max=200)], filters=[strip_value])
    attribute = StringField("Attribute", validators=[DataRequired(), Length(max=200)], filters=[strip_value])
    value = TextAreaField("Value", validators=[DataRequired()], filters=[strip_value])
    confidence = StringField(
        "Confidence", validators=[Optional(), AnyOf(FACT_CONFIDENCE_LEVELS)], filters=[strip_value]
    )
    importance = StringField("Importance", validators=[Optional(), AnyOf(IMPORTANCE_LEVELS)], filters=[strip_value])
    source = StringField("Source", validators=[Optional(), AnyOf(FACT_SOURCES)], filters=[strip_value])


class FactUpdateForm(ApiForm):
    value = TextAreaField("Value", validators=[DataRequired()], filters=[strip_value])
    change_type = StringField(
        "Change type",
        name="changeType",
        validators=[Optional(), AnyOf(("update", "contradiction", "resolution"))],
        filters=[strip_value],
    )
    notes = TextAreaField("Notes", validators=[Optional(), Length(max=2000)], filters=[strip_value])


class EventForm(ApiForm):
    description = TextAreaField("Description", validators=[DataRequired()], filters=[strip_value])
    position = IntegerField("Position", validators=[Optional(), NumberRange(min=0)])
    date = StringField("Story time", validators=[Optional(), Length(max=200)], filters=[strip_value])
    importance = StringField("Importance", validators=[Optional(), AnyOf(IMPORTANCE_LEVELS)], filters=[strip_value])
    chapter_id = IntegerField("Chapter", name="chapterId", validators=[Optional()])


class ResolveIssueForm(ApiForm):
    method = StringField("Method", validators=[Optional(), Length(max=40)], filters=[strip_value])
    notes = TextAreaField("Notes", validators=[Optional(), Length(max=2000)], filters=[strip_value])


class ConsistencyCheckForm(ApiForm):
    content = TextAreaField("Content", validators=[InputRequired()])
    book_id = IntegerField("Book", name="bookId", validators=[DataRequired()])
    chapter_id = IntegerField("Chapter", name="chapterId", validators=[Optional()])
    persist = BooleanField("Persist issues", default=False)
