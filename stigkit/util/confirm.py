import re

from stigkit import util
from stigkit.errors import UserAborted

__all__ = ['confirm', 'require_confirmation']


def confirm(question, *, input_func=input):
    """
    Ask 'question' and return True only for a full-word 'yes' (any case).

    Anything else, including EOF on a closed stdin, counts as no.
    """
    try:
        reply = input_func(f'{question} (yes/no): ')
    except EOFError:
        return False
    return bool(re.fullmatch(r'[Yy][Ee][Ss]', reply.strip()))


def require_confirmation(question, *, input_func=input):
    """
    Like confirm(), but raise UserAborted for any non-affirmative answer.
    """
    if not confirm(question, input_func=input_func):
        util.log("aborted by user", skip_frames=1)
        raise UserAborted(question)
