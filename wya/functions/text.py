# Message text helpers


def normalize_content(content):
    # Strip surrounding whitespace and blank edge lines but preserve internal line breaks
    if not content or not isinstance(content, str):
        return ''
    lines = content.strip().split('\n')
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return '\n'.join(line.rstrip() for line in lines)


def snippet(content, length=140):
    # First line of a message, truncated for notifications
    return (content or '').strip().split('\n')[0][:length]
