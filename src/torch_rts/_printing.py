"""Readable string formatting of the model matrices."""

from __future__ import annotations

import contextlib

import torch

REPR_SPLIT_LENGTH = 110

if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily. From the future of pytorch."""
        old_printoptions = torch._tensor_str.PRINT_OPTS  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


def format_pair(
    title: str, left_name: str, left: torch.Tensor, right_name: str, right: torch.Tensor, linewidth: int
) -> str:
    """Format two matrices of a model side by side (or one above the other if too wide).

    Example::

        Process: F = tensor([[1., 1.],   &  Q = tensor([[0.01, 0.00],
                             [0., 1.]])            [0.00, 0.01]])
    """
    with printoptions(profile="short", sci_mode=False, linewidth=linewidth):
        left_repr = str(left).split("\n")
        right_repr = str(right).split("\n")

    head = f"{title}: {left_name} = "
    indent = " " * len(head)

    max_char_left = max(len(line) for line in left_repr)
    max_char_right = max(len(line) for line in right_repr)

    if max_char_left + max_char_right <= REPR_SPLIT_LENGTH:  # Single line
        left_repr = [line.ljust(max_char_left) for line in left_repr]
        sep = f"  &  {right_name} = "
        headers = [head] + [indent] * (len(left_repr) - 1)
        seps = [sep] + [" " * len(sep)] * (len(left_repr) - 1)
        return "\n".join(["".join(lines) for lines in zip(headers, left_repr, seps, right_repr)])

    # Two lines
    headers = [head] + [indent] * (len(left_repr) - 1)
    headers += ["", f"{right_name} = ".rjust(len(head))] + [indent] * (len(right_repr) - 1)
    return "\n".join(["".join(lines) for lines in zip(headers, [*left_repr, "", *right_repr])])
