import numpy as np


def round_half_up(values):
    """
    Round values to the nearest integer, with halves rounded away from zero.

    numpy rounds halves to the nearest even number, which would make a pixel centred exactly between two indices
    depend on the parity of the index.

    :param values: The values to round.
    :type values: array_like
    :return: The rounded values as integers.
    :rtype: np.ndarray[int]
    """
    values = np.asarray(values, dtype=float)
    return (np.sign(values) * np.floor(np.abs(values) + 0.5)).astype(int)


def is_segmented(mask):
    """
    Check if a mask is segmented.

    A mask is considered segmented if it contains more than 2 foreground pixels, the smallest amount of pixels that can
    enclose an area.

    :param mask: A binary mask.
    :type mask: np.ndarray
    :return: True if the mask contains at least 3 foreground pixels, otherwise False.
    :rtype: bool
    """
    return np.count_nonzero(mask > 0) > 2


def sort_order(values):
    """
    Compute the indices that sort `values` in ascending order.

    Equal values keep their original order.

    :param values: The values to sort.
    :type values: list
    :return: The indices of `values` in sorted order.
    :rtype: list[int]
    """
    return sorted(range(len(values)), key=lambda i: values[i])


def compare_with(items, other):
    """
    Compute the permutation that rearranges `items` into the order of `other`.

    For each element of `other`, the index of the first equal element in `items` is recorded, so that
    `[items[i] for i in compare_with(items, other)] == other`.

    :param items: The elements in their current order.
    :type items: list
    :param other: The same elements in the desired order.
    :type other: list
    :return: The indices into `items`.
    :rtype: list[int]
    :raises ValueError: If the lists differ in length or an element of `other` is missing from `items`.
    """
    if len(items) != len(other):
        raise ValueError(f'Lists of unequal length ({len(items)} and {len(other)}). Unable to compare.')
    order = []
    for item in other:
        try:
            order.append(items.index(item))
        except ValueError:
            raise ValueError(f'An element ({item}) of the other list was not found. Unable to compare.') from None
    return order


def sort_by_order(items, order):
    """ Rearrange `items` so that element i of the result is `items[order[i]]`. """
    if len(items) != len(order):
        raise ValueError(f'Expected an order of length {len(items)}, got {len(order)}.')
    return [items[i] for i in order]
