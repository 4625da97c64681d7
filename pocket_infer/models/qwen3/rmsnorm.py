"""
RMSNorm (Root Mean Square Layer Normalization).

Formula: RMSNorm(x) = x * rsqrt(mean(x^2) + eps) * weight

The statistic is computed in float32 and the result cast back to the input
dtype, so half-precision weights normalize the same way full precision does.
"""

import torch
import torch.nn as nn


class RMSNorm(nn.Module):
    """Root Mean Square Layer Normalization.

    Args:
        hidden_size: Size of the normalized (last) dimension.
        eps: Small constant for numerical stability.
    """

    def __init__(self, hidden_size: int, eps: float = 1e-6) -> None:
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(hidden_size))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        input_dtype = x.dtype
        x = x.float()
        variance = x.pow(2).mean(dim=-1, keepdim=True)
        x = x * torch.rsqrt(variance + self.eps)
        return self.weight * x.to(input_dtype)
