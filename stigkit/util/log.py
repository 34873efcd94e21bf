import os
import sys
import inspect
from pathlib import Path
from datetime import datetime

__all__ = ['log', 'warning', 'error', 'verbosity']

# lowest level shown for a given STIGKIT_VERBOSE value
_LEVELS = ['INFO', 'WARNING', 'ERROR']


def verbosity():
    """
    Return the verbosity level from STIGKIT_VERBOSE, defaulting to 1.

    0 hides INFO messages, 1 (or more) shows everything. Anything that
    isn't a number counts as the default.
    """
    env = os.environ.get('STIGKIT_VERBOSE')
    try:
        return int(env) if env else 1
    except ValueError:
        return 1


def _caller_prefix(stack):
    # bottom of the stack, or runpy / console-script executed module
    for frame_info in stack:
        if frame_info.function == '<module>':
            break
    module = frame_info

    prefix = datetime.now().strftime('%Y-%m-%d %H:%M:%S ')
    prefix += f'{Path(module.filename).name}:{module.lineno}'

    # last (topmost) function that isn't us
    parent = stack[0]
    function = parent.function

    # crude guess of a class name for methods, via 'self' in caller locals
    p_locals = parent.frame.f_locals
    if 'self' in p_locals:
        self = p_locals['self']
        name = self.__name__ if isinstance(self, type) else self.__class__.__name__
        function = f'{name}.{function}'

    if parent.filename != module.filename:
        parent_modname = parent.frame.f_globals['__name__']
        prefix += f': {parent_modname}.{function}:{parent.lineno}'
    elif parent.function != '<module>':
        prefix += f': {function}:{parent.lineno}'

    return prefix


def log(msg, *, level='INFO', skip_frames=0):
    """
    Print 'msg' with the proper context of the caller function, as a very
    lightweight replacement for the python 'logging' module.

    When called from a module directly, it just prints the message:
        2026-10-16 11:29:16 cli.py:14: [INFO] some message

    When called from a function of another module, it adds the module and
    function name, and a line number inside that function:
        2026-10-16 11:29:16 cli.py:27: stigkit.datastream.Resolver.resolve:90: [INFO] ...

    The leftmost filename/lineno is always the base module executed
    (the entrypoint), the right side is the topmost stack frame.

    'level' is one of INFO, WARNING, ERROR. ERROR goes to stderr, the rest
    to stdout. With STIGKIT_VERBOSE=0, INFO messages are dropped.

    With 'skip_frames' > 0, report the function which called the function
    which called log(), useful for thin wrappers (like util.warning() or
    util.subprocess_run()) that want their caller logged instead of themselves.
    """
    if level not in _LEVELS:
        raise ValueError(f"unknown log level: {level}")
    if level == 'INFO' and verbosity() < 1:
        return

    stack = inspect.stack()
    if len(stack)-1 <= skip_frames:
        raise SyntaxError("skip_frames exceeds call stack (frame count)")
    prefix = _caller_prefix(stack[skip_frames+1:])

    stream = sys.stderr if level == 'ERROR' else sys.stdout
    stream.write(f'{prefix}: [{level}] {msg}\n')
    stream.flush()


def warning(msg, *, skip_frames=0):
    log(msg, level='WARNING', skip_frames=skip_frames+1)


def error(msg, *, skip_frames=0):
    log(msg, level='ERROR', skip_frames=skip_frames+1)
