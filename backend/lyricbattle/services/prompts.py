from lyricbattle import db
from lyricbattle.errors import NoPromptAvailable
from lyricbattle.models import Prompt


def pick_prompt() -> Prompt:
    """Return a random active lyric prompt."""
    prompt = Prompt.query.filter_by(is_active=True).order_by(db.func.random()).first()
    if prompt is None:
        raise NoPromptAvailable('No active prompts are available')
    return prompt
