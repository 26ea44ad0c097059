import random

import numpy as np
import pytest
import torch


@pytest.fixture(scope="session", autouse=True)
def patch_torch_numpy():
    """
    Monkey-patch torch.Tensor.numpy() so it always
    returns a CPU NumPy array (avoiding errors if
    the tensor is on CUDA or requires grad).
    """
    old_numpy = torch.Tensor.numpy

    def new_numpy(t):
        t = t.detach()
        if t.is_cuda:
            t = t.cpu()
        return old_numpy(t)

    torch.Tensor.numpy = new_numpy

    yield

    torch.Tensor.numpy = old_numpy


@pytest.fixture(autouse=True)
def seed_everything():
    random.seed(1337)
    np.random.seed(1337)
    torch.manual_seed(1337)
