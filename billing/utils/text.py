from billing.constants import MAX_MESSAGE_LENGTH


def split_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Разбивает длинное сообщение на части по границам строк"""
    if len(text) <= max_length:
        return [text]

    chunks = []
    current = ""
    for line in text.splitlines(keepends=True):
        # Строка длиннее лимита режется как есть
        while len(line) > max_length:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:max_length])
            line = line[max_length:]

        if len(current) + len(line) > max_length:
            chunks.append(current)
            current = ""
        current += line

    if current:
        chunks.append(current)
    return chunks
