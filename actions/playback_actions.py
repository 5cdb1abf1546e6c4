import random


def get_next_index(current, total, shuffle, rng=random):
    if total <= 0:
        return -1
    if current is None or current < 0 or current >= total:
        current = 0

    if shuffle:
        # Any slot, the playing one included.
        return rng.randrange(total)
    return (current + 1) % total


def get_prev_index(current, total, shuffle, rng=random):
    if total <= 0:
        return -1
    if current is None or current < 0 or current >= total:
        current = 0

    if shuffle:
        return rng.randrange(total)
    return current - 1 if current > 0 else total - 1


def build_shuffled_queue(lead, tracks, lead_index=None, rng=random):
    """
    Return `tracks` randomly permuted with `lead` moved to the front.

    `lead_index` names the slot `lead` occupies in `tracks`; when it does not
    point at `lead`, every copy of it (matched by id) is dropped instead.
    """
    rest = list(tracks or [])
    if lead_index is not None and 0 <= lead_index < len(rest) and rest[lead_index].id == lead.id:
        rest.pop(lead_index)
    else:
        rest = [t for t in rest if t.id != lead.id]
    rng.shuffle(rest)
    return [lead] + rest


def should_advance_on_end(current, total):
    """With repeat off, playback continues only while a later slot exists."""
    return 0 <= current < total - 1
