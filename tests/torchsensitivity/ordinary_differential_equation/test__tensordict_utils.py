import pytest
import torch
from tensordict import TensorDict

from torchsensitivity.ordinary_differential_equation import (
    ConvergenceError,
    IntegrationError,
    MaxStepsExceeded,
    ODESolverError,
    StepSizeError,
    flatten_state,
    unflatten_state,
)


class TestFlattenState:
    def test_tensor(self):
        """Tensors are reshaped, batch dimensions restored"""
        y = torch.arange(6, dtype=torch.float64).reshape(2, 3)

        flat, unflatten = flatten_state(y)

        assert flat.shape == (6,)
        assert torch.equal(unflatten(flat), y)
        assert unflatten(torch.stack([flat, flat])).shape == (2, 2, 3)

    def test_tensordict_sorted_keys(self):
        """Leaves are concatenated in sorted key order"""
        y = TensorDict(
            {
                "b": torch.tensor([3.0, 4.0], dtype=torch.float64),
                "a": torch.tensor([1.0], dtype=torch.float64),
            },
            batch_size=[],
        )

        flat, unflatten = flatten_state(y)

        assert torch.equal(
            flat, torch.tensor([1.0, 3.0, 4.0], dtype=torch.float64)
        )
        restored = unflatten(flat)
        assert torch.equal(restored["b"], y["b"])

    def test_tensordict_batched_unflatten(self):
        """A leading time dimension becomes the batch size"""
        y = TensorDict(
            {"x": torch.zeros(2, dtype=torch.float64)}, batch_size=[]
        )
        _, unflatten = flatten_state(y)

        restored = unflatten(torch.ones(5, 2, dtype=torch.float64))

        assert restored.batch_size == torch.Size([5])
        assert restored["x"].shape == (5, 2)

    def test_nested_tensordict(self):
        """Nested keys round trip"""
        y = TensorDict(
            {
                "outer": TensorDict(
                    {"inner": torch.ones(2, dtype=torch.float64)},
                    batch_size=[],
                ),
                "z": torch.zeros(1, dtype=torch.float64),
            },
            batch_size=[],
        )

        flat, unflatten = flatten_state(y)
        restored = unflatten(flat)

        assert flat.shape == (3,)
        assert torch.equal(restored["outer", "inner"], y["outer", "inner"])

    def test_batched_tensordict_rejected(self):
        """States must have an empty batch size"""
        y = TensorDict({"x": torch.zeros(3, 2)}, batch_size=[3])

        with pytest.raises(ValueError, match="empty batch size"):
            flatten_state(y)

    def test_unflatten_state(self):
        """unflatten_state rebuilds from a template"""
        template = TensorDict(
            {"x": torch.zeros(2, dtype=torch.float64)}, batch_size=[]
        )

        restored = unflatten_state(
            torch.tensor([1.0, 2.0], dtype=torch.float64), template
        )

        assert torch.equal(
            restored["x"], torch.tensor([1.0, 2.0], dtype=torch.float64)
        )


class TestExceptionHierarchy:
    def test_solver_errors(self):
        """Solver failures share one base class"""
        assert issubclass(ODESolverError, IntegrationError)
        assert issubclass(MaxStepsExceeded, ODESolverError)
        assert issubclass(StepSizeError, ODESolverError)
        assert issubclass(ConvergenceError, ODESolverError)
