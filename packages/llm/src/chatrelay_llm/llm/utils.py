"""Reply post-processing helpers."""

SENTENCE_ENDINGS = ".!?)"


def normalize_reply(text: str, truncate: bool = True) -> str:
    """Trim a completion and drop any trailing partial sentence.

    The trimmed text is cut just after the last sentence-ending mark
    (``. ! ? )``) found anywhere in it. Text with no such mark is returned
    trimmed but otherwise unchanged.

    Args:
        text: Raw completion text
        truncate: Whether to cut at the last sentence end

    Returns:
        Normalized reply

    Example:
        >>> normalize_reply("  Hello there. Unfinished frag ")
        'Hello there.'
        >>> normalize_reply("no punctuation here  ")
        'no punctuation here'
    """
    reply = text.strip()
    if not truncate:
        return reply

    last_end = max(reply.rfind(mark) for mark in SENTENCE_ENDINGS)
    if last_end == -1:
        return reply
    return reply[: last_end + 1]
