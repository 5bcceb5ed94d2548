import pytest
import torch

from torch_srkf.linalg import gram, gram_in_time, is_steady, lower_triangularize, max_relative_change


def test_gram_is_batched():
    factors = torch.randn(4, 3, 5, dtype=torch.float64)

    products = gram(factors)

    assert products.shape == (4, 3, 3)
    for factor, product in zip(factors, products):
        assert torch.allclose(product, factor @ factor.T)


def test_gram_in_time_stacks_sequences():
    factors = [torch.randn(2, 2, dtype=torch.float64) for _ in range(5)]

    products = gram_in_time(factors)

    assert products.shape == (5, 2, 2)
    assert torch.allclose(products[3], factors[3] @ factors[3].T)
    assert torch.allclose(products, products.mT)


@pytest.mark.parametrize("shape", [(1, 1), (3, 3), (3, 7), (5, 8)])
def test_lower_triangularize(shape):
    stacked = torch.randn(*shape, dtype=torch.float64)

    triangular = lower_triangularize(stacked)

    assert triangular.shape == (shape[0], shape[0])
    assert torch.equal(torch.triu(triangular, diagonal=1), torch.zeros_like(triangular))
    assert (torch.diagonal(triangular) >= 0).all()
    assert torch.allclose(gram(triangular), gram(stacked))


def test_lower_triangularize_is_idempotent_on_factors():
    # A lower triangular factor with a positive diagonal is its own triangularization
    factor = torch.tril(torch.randn(4, 4, dtype=torch.float64))
    factor.diagonal().abs_().add_(0.1)

    assert torch.allclose(lower_triangularize(factor), factor)


def test_lower_triangularize_zero_block():
    stacked = torch.cat([torch.randn(3, 2, dtype=torch.float64), torch.zeros(3, 3, dtype=torch.float64)], dim=1)
    stacked[0] = 0

    triangular = lower_triangularize(stacked)

    assert torch.isfinite(triangular).all()
    assert torch.allclose(gram(triangular), gram(stacked))


def test_max_relative_change():
    new = torch.tensor([[2.0, 0.0], [1.0, 5.0]], dtype=torch.float64)
    old = torch.tensor([[1.0, 0.0], [1.0, 4.0]], dtype=torch.float64)

    # Unchanged entries (including the structural zero) do not contribute
    assert max_relative_change(new, old) == pytest.approx(0.5)
    assert max_relative_change(old, old) == 0.0


def test_is_steady_is_strict():
    old = torch.tensor([[1.0, 0.0], [0.5, 2.0]], dtype=torch.float64)
    new = old.clone()
    new[1, 1] = 2.0 * (1 + 1e-7)

    assert is_steady(new, old, 1e-5)
    assert not is_steady(new, old, 1e-8)
    assert not is_steady(old, old, 0.0)  # A null tolerance never triggers
