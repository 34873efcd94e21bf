r"""
Small text helpers shared by modules generating or consuming shell output.

dedent() allows raw blocks like

    script = dedent(fr'''
        #!/bin/bash
        echo {value}
    ''')

without the leading or trailing newlines and any common leading whitespaces.
"""

import re
import textwrap

__all__ = ['dedent', 'parse_markers']


def dedent(text):
    """
    Like textwrap.dedent(), but also strip leading and trailing spaces/newlines
    up to the content.
    """
    return textwrap.dedent(text.lstrip('\n').rstrip(' \n'))


def parse_markers(lines, keys):
    """
    Pick 'KEY=value' marker lines for the given 'keys' out of program output,
    ignoring everything else.

    Return a dict of found keys; a key appearing more than once keeps its last
    value.
    """
    if isinstance(lines, str):
        lines = lines.splitlines()
    wanted = '|'.join(re.escape(k) for k in keys)
    markers = {}
    for line in lines:
        m = re.fullmatch(fr'({wanted})=(.*)', line.strip())
        if m:
            markers[m.group(1)] = m.group(2)
    return markers
