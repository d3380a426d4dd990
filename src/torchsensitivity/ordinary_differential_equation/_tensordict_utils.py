"""Flattening and unflattening of TensorDict states.

Sensitivity engines work on flat state vectors; structured states are
flattened once at the problem boundary and restored for the user's
right-hand side and for the returned solution.
"""

from typing import Callable, List, Tuple, Union

import torch
from tensordict import TensorDict


def flatten_state(
    y: Union[torch.Tensor, TensorDict],
) -> Tuple[
    torch.Tensor, Callable[[torch.Tensor], Union[torch.Tensor, TensorDict]]
]:
    """
    Flatten a Tensor or TensorDict state to a 1D tensor.

    Parameters
    ----------
    y : Tensor or TensorDict
        State to flatten. A TensorDict must have an empty batch size.

    Returns
    -------
    flat : Tensor
        Flattened state of shape (total_elements,).
    unflatten : callable
        Restores the original structure. Accepts leading batch dimensions:
        an input of shape (T, total_elements) produces a TensorDict with
        batch_size=(T,) or a Tensor of shape (T, *state_shape).
    """
    if isinstance(y, torch.Tensor):
        shape = tuple(y.shape)

        def unflatten_tensor(flat: torch.Tensor) -> torch.Tensor:
            return flat.reshape(*flat.shape[:-1], *shape)

        return y.reshape(-1), unflatten_tensor

    if len(y.batch_size) != 0:
        raise ValueError(
            f"TensorDict states must have an empty batch size, "
            f"got {tuple(y.batch_size)}"
        )

    y_flat_keys = y.flatten_keys(separator=".")
    flat_keys = sorted(y_flat_keys.keys())

    shapes: List[Tuple[str, Tuple[int, ...]]] = []
    flat_parts = []
    for key in flat_keys:
        leaf = y_flat_keys[key]
        shapes.append((key, tuple(leaf.shape)))
        flat_parts.append(leaf.reshape(-1))

    flat = torch.cat(flat_parts, dim=-1)

    def unflatten_tensordict(flat_tensor: torch.Tensor) -> TensorDict:
        batch_shape = flat_tensor.shape[:-1]
        flat_td = TensorDict({}, batch_size=batch_shape)

        offset = 0
        for key, shape in shapes:
            numel = 1
            for s in shape:
                numel *= s
            leaf = flat_tensor[..., offset : offset + numel]
            flat_td[key] = leaf.reshape(*batch_shape, *shape)
            offset += numel

        return flat_td.unflatten_keys(separator=".")

    return flat, unflatten_tensordict


def unflatten_state(
    flat: torch.Tensor,
    template: Union[torch.Tensor, TensorDict],
) -> Union[torch.Tensor, TensorDict]:
    """Unflatten ``flat`` into the structure of ``template``."""
    _, unflatten_fn = flatten_state(template)
    return unflatten_fn(flat)
