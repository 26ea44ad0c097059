import logging
from typing import List, Tuple

import numpy as np
from tqdm import tqdm

from tapegrad import nn, optim
from tapegrad.config_schema import GraphConfig
from tapegrad.graph import ComputeGraph
from tapegrad.logger import setup_logger
from tapegrad.store import TensorStore
from tapegrad.tensor import Tensor

logger = logging.getLogger(__name__)


class TokenClassifier(nn.Module):
    """
    Per-token classifier: embedding projection, sinusoidal positions, a stack of pre-norm
    attention blocks and a linear head.
    """

    def __init__(
        self,
        store: TensorStore,
        input_dim: int,
        hidden_dim: int,
        num_heads: int,
        num_layers: int,
        num_classes: int,
        dropout_prob: float = 0.1,
    ) -> None:
        super().__init__()
        self.embed = nn.AffineLayer(store, "embed", input_dim, hidden_dim)
        for i in range(num_layers):
            setattr(
                self,
                f"block{i}",
                nn.MultiHeadAttention(
                    store, f"block{i}", num_heads, hidden_dim, dropout_prob
                ),
            )
        self.num_layers = num_layers
        self.norm = nn.LayerNormalization(store, "norm", hidden_dim)
        self.head = nn.AffineLayer(store, "head", hidden_dim, num_classes)

    def forward(self, graph: ComputeGraph, x: Tensor, batch_size: int) -> Tensor:
        seq_len = x.rows // batch_size
        h = self.embed(graph, x)
        positions = graph.repeat_rows(
            graph.build_position_matrix(seq_len, h.columns), batch_size
        )
        h = graph.add(h, positions)
        for i in range(self.num_layers):
            h = getattr(self, f"block{i}")(graph, h, batch_size)
        return self.head(graph, self.norm(graph, h))


def make_batch(
    rng: np.random.RandomState, batch_size: int, seq_len: int, input_dim: int
) -> Tuple[np.ndarray, List[int]]:
    """
    Random sequences where every token is labeled 1 if its first feature is above the mean of
    its sequence, 0 otherwise. Solving it requires attending across the sequence.
    """
    x = rng.randn(batch_size, seq_len, input_dim)
    means = x[:, :, 0].mean(axis=1, keepdims=True)
    labels = (x[:, :, 0] > means).astype(int)
    return x.reshape(batch_size * seq_len, input_dim), labels.reshape(-1).tolist()


def train(config: GraphConfig, steps: int = 200, batch_size: int = 8, seq_len: int = 6):
    store = TensorStore(config)
    model = TokenClassifier(
        store, input_dim=4, hidden_dim=16, num_heads=4, num_layers=2, num_classes=2
    )
    optimizer = optim.Adam(model.parameters, lr=3e-3, max_grad_norm=1.0)
    rng = np.random.RandomState(config.seed)
    logger.info(
        f"Training {model.__class__.__name__} with {model.num_parameters()} parameters "
        f"on {store.backend.name}"
    )

    model.train()
    for step in tqdm(range(steps), desc="Training", leave=False):
        x, labels = make_batch(rng, batch_size, seq_len, 4)
        optimizer.zero_grad()
        with ComputeGraph(store) as graph:
            logits = model(graph, graph.tensor_from(x, requires_grad=False), batch_size)
            loss = graph.cross_entropy(logits, labels)
            loss_value = float(loss.to_numpy()[0])
            graph.backward(loss)
        optimizer.step()
        if step % 50 == 0:
            logger.info(f"step {step}: loss {loss_value:.4f}")

    model.eval()
    x, labels = make_batch(rng, batch_size, seq_len, 4)
    with ComputeGraph(store, needs_backprop=False) as graph:
        logits = model(graph, graph.tensor_from(x, requires_grad=False), batch_size)
        predictions = graph.argmax(logits)
    accuracy = np.mean(np.array(predictions) == np.array(labels))
    logger.info(f"Held-out token accuracy: {accuracy:.3f}")

    with open("token_classifier.bin", "wb") as f:
        model.save(f)
    logger.info("Saved parameters to token_classifier.bin")


if __name__ == "__main__":
    setup_logger()
    train(GraphConfig.from_env(seed=1337))
