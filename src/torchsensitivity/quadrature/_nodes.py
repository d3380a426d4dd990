"""Gauss-Kronrod nodes and weights."""

from typing import Optional, Tuple

import torch
from torch import Tensor


# Pre-tabulated Gauss-Kronrod nodes and weights (high precision)
# These are computed to extended precision and stored here.
# Reference: QUADPACK (Piessens et al., 1983)
#
# For each order, we store:
# - positive_nodes: positive nodes (including 0 if present), ascending order
# - positive_k_weights: Kronrod weights for positive nodes
# - positive_g_weights: Gauss weights for the embedded Gauss rule
# - gauss_mask: which positive nodes are also Gauss nodes (True/False)
#
# The nodes are symmetric about 0, so the full set is rebuilt by reflection.

_GK15_POSITIVE_NODES = [
    0.000000000000000000000000000000000,
    0.207784955007898467600689403773245,
    0.405845151377397166906606412076961,
    0.586087235467691130294144838258730,
    0.741531185599394439863864773280788,
    0.864864423359769072789712788640926,
    0.949107912342758524526189684047851,
    0.991455371120812639206854697526329,
]

_GK15_POSITIVE_K_WEIGHTS = [
    0.209482141084727828012999174891714,
    0.204432940075298892414161999234649,
    0.190350578064785409913256402421014,
    0.169004726639267902826583426598550,
    0.140653259715525918745189590510238,
    0.104790010322250183839876322541518,
    0.063092092629978553290700663189204,
    0.022935322010529224963732008058970,
]

# Gauss weights for G7 (at odd indices: 1, 3, 5, 7 in positive nodes)
_GK15_POSITIVE_G_WEIGHTS = [
    0.417959183673469387755102040816327,
    0.381830050505118944950369775488975,
    0.279705391489276667901467771423780,
    0.129484966168869693270611432679082,
]

# Gauss nodes among the positive nodes: G7 sits at 0, ±0.406, ±0.742, ±0.949
# In positive_nodes: indices 0, 2, 4, 6 are Gauss nodes
_GK15_GAUSS_MASK = [True, False, True, False, True, False, True, False]


_GK21_POSITIVE_NODES = [
    0.000000000000000000000000000000000,
    0.148874338981631210884826001129720,
    0.294392862701460198131126603103866,
    0.433395394129247190799265943165784,
    0.562757134668604683339000099272694,
    0.679409568299024406234327365114874,
    0.780817726586416897063717578345042,
    0.865063366688984510732096688423493,
    0.930157491355708226001207180059508,
    0.973906528517171720077964012084452,
    0.995657163025808080735527280689003,
]

_GK21_POSITIVE_K_WEIGHTS = [
    0.149445554002916905664936468389821,
    0.147739104901338491374841515972068,
    0.142775938577060080797094273138717,
    0.134709217311473325928054001771707,
    0.123491976262065851077958109831074,
    0.109387158802297641899210590325805,
    0.093125454583697605535065465083366,
    0.075039674810919952767043140916190,
    0.054755896574351996031381300244580,
    0.032558162307964727478818972459390,
    0.011694638867371874278064396062192,
]

# Gauss weights for G10 (at indices 1, 3, 5, 7, 9 in positive nodes)
_GK21_POSITIVE_G_WEIGHTS = [
    0.295524224714752870173892994651338,
    0.269266719309996355091226921569469,
    0.219086362515982043995534934228163,
    0.149451349150580593145776339657697,
    0.066671344308688137593568809893332,
]

# Which positive nodes are Gauss nodes
_GK21_GAUSS_MASK = [
    False,
    True,
    False,
    True,
    False,
    True,
    False,
    True,
    False,
    True,
    False,
]


_GK_DATA = {
    15: (
        _GK15_POSITIVE_NODES,
        _GK15_POSITIVE_K_WEIGHTS,
        _GK15_POSITIVE_G_WEIGHTS,
        _GK15_GAUSS_MASK,
    ),
    21: (
        _GK21_POSITIVE_NODES,
        _GK21_POSITIVE_K_WEIGHTS,
        _GK21_POSITIVE_G_WEIGHTS,
        _GK21_GAUSS_MASK,
    ),
}


def gauss_kronrod_nodes_weights(
    order: int,
    dtype: torch.dtype = torch.float64,
    device: Optional[torch.device] = None,
) -> Tuple[Tensor, Tensor, Tensor, Tensor]:
    """
    Gauss-Kronrod nodes and weights on [-1, 1].

    Parameters
    ----------
    order : int
        Kronrod order: 15 (G7-K15) or 21 (G10-K21).
    dtype : torch.dtype
        Data type for output tensors.
    device : torch.device, optional
        Device for output tensors.

    Returns
    -------
    nodes : Tensor
        Kronrod nodes, shape (order,), sorted ascending.
    kronrod_weights : Tensor
        Kronrod weights, shape (order,).
    gauss_weights : Tensor
        Embedded Gauss weights, shape (order // 2,).
    gauss_indices : Tensor
        Indices into ``nodes`` of the Gauss nodes, shape (order // 2,).
    """
    if order not in _GK_DATA:
        raise ValueError(f"order must be 15 or 21, got {order}")

    positive_nodes, positive_k_weights, positive_g_weights, gauss_mask = (
        _GK_DATA[order]
    )
    n_neg = len(positive_nodes) - 1

    # Reflect about the zero node
    nodes = [-x for x in reversed(positive_nodes[1:])] + positive_nodes
    k_weights = list(reversed(positive_k_weights[1:])) + positive_k_weights

    pairs = []
    gauss_positions = [i for i, is_gauss in enumerate(gauss_mask) if is_gauss]
    for i, w in zip(gauss_positions, positive_g_weights):
        if i == 0:
            pairs.append((n_neg, w))
        else:
            pairs.append((n_neg - i, w))
            pairs.append((n_neg + i, w))
    pairs.sort()

    return (
        torch.tensor(nodes, dtype=dtype, device=device),
        torch.tensor(k_weights, dtype=dtype, device=device),
        torch.tensor([w for _, w in pairs], dtype=dtype, device=device),
        torch.tensor([i for i, _ in pairs], dtype=torch.long, device=device),
    )
