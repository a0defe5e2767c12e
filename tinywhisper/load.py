"""Build a model from a directory tree of dumped ``.npy`` parameter files.

Every file holds a flat float array whose first ``ndim`` entries give the
shape of the tensor and whose remaining entries are its values in row-major
order.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path

import numpy as np

from .model import (
    MLP,
    AudioEncoder,
    AudioEncoderConfig,
    Conv1d,
    LayerNorm,
    Linear,
    MultiHeadCrossAttention,
    MultiHeadSelfAttention,
    ResidualDecoderAttentionBlock,
    ResidualEncoderAttentionBlock,
    TextDecoder,
    TextDecoderConfig,
    Whisper,
    WhisperConfig,
    attn_decoder_mask,
)

logger = logging.getLogger(__name__)


def load_tensor(name: str, path, ndim: int) -> np.ndarray:
    """Read ``<path>/<name>.npy`` as an ``ndim``-dimensional array."""
    tensor_path = Path(path) / f"{name}.npy"
    logger.debug("%s", tensor_path)

    data = np.load(tensor_path, allow_pickle=False)
    flat = np.asarray(data, dtype=np.float64).ravel()
    if flat.size < ndim:
        raise ValueError(f"{tensor_path}: too short to hold a {ndim}-dimensional shape")

    shape = tuple(int(v) for v in flat[:ndim])
    if any(dim < 0 for dim in shape):
        raise ValueError(f"{tensor_path}: negative dimension in shape {shape}")
    values = flat[ndim:]
    if math.prod(shape) != values.size:
        raise ValueError(
            f"{tensor_path}: shape {shape} does not match {values.size} stored values"
        )
    return values.reshape(shape)


def _load_scalar(name: str, path) -> float:
    tensor = load_tensor(name, path, 1)
    if tensor.size != 1:
        raise ValueError(f"{Path(path) / name}: expected a single value, found {tensor.size}")
    return float(tensor[0])


def _load_count(name: str, path) -> int:
    value = _load_scalar(name, path)
    if value < 0:
        raise ValueError(f"{Path(path) / name}: expected a non-negative count, found {value}")
    return int(value)


def load_linear(path) -> Linear:
    """Load a linear layer; the bias is optional."""
    weight = load_tensor("weight", path, 2)
    try:
        bias = load_tensor("bias", path, 1)
    except (OSError, ValueError):
        bias = None
    return Linear(weight, bias)


def load_layer_norm(path) -> LayerNorm:
    """Load a layer norm from its weight, bias and epsilon."""
    weight = load_tensor("weight", path, 1)
    bias = load_tensor("bias", path, 1)
    eps = _load_scalar("eps", path)
    return LayerNorm(gamma=weight, beta=bias, epsilon=eps)


def _load_attention_parts(path) -> dict:
    root = Path(path)
    return {
        "query": load_linear(root / "query"),
        "key": load_linear(root / "key"),
        "value": load_linear(root / "value"),
        "out": load_linear(root / "out"),
        "n_head": _load_count("n_head", root),
    }


def load_multihead_self_attention(path) -> MultiHeadSelfAttention:
    """Load a self-attention layer."""
    return MultiHeadSelfAttention(**_load_attention_parts(path))


def load_multihead_cross_attention(path) -> MultiHeadCrossAttention:
    """Load a cross-attention layer."""
    return MultiHeadCrossAttention(**_load_attention_parts(path))


def load_mlp(path) -> MLP:
    """Load a two-layer feed-forward block."""
    root = Path(path)
    return MLP(lin1=load_linear(root / "mlp1"), lin2=load_linear(root / "mlp2"))


def load_conv1d(path, stride: int, padding: int) -> Conv1d:
    """Load a 1-D convolution with the given stride and padding."""
    weight = load_tensor("weight", path, 3)
    bias = load_tensor("bias", path, 1)
    return Conv1d(weight, bias, stride=stride, padding=padding)


def load_residual_encoder_attention_block(path) -> ResidualEncoderAttentionBlock:
    """Load one encoder transformer block."""
    root = Path(path)
    return ResidualEncoderAttentionBlock(
        attn=load_multihead_self_attention(root / "attn"),
        attn_ln=load_layer_norm(root / "attn_ln"),
        mlp=load_mlp(root / "mlp"),
        mlp_ln=load_layer_norm(root / "mlp_ln"),
    )


def load_residual_decoder_attention_block(path) -> ResidualDecoderAttentionBlock:
    """Load one decoder transformer block."""
    root = Path(path)
    return ResidualDecoderAttentionBlock(
        attn=load_multihead_self_attention(root / "attn"),
        attn_ln=load_layer_norm(root / "attn_ln"),
        cross_attn=load_multihead_cross_attention(root / "cross_attn"),
        cross_attn_ln=load_layer_norm(root / "cross_attn_ln"),
        mlp=load_mlp(root / "mlp"),
        mlp_ln=load_layer_norm(root / "mlp_ln"),
    )


def load_audio_encoder(path) -> tuple[AudioEncoder, AudioEncoderConfig]:
    """Load the audio encoder and the configuration it implies."""
    root = Path(path)
    n_mels = _load_count("n_mels", root)
    n_audio_state = _load_count("n_audio_state", root)

    conv1 = load_conv1d(root / "conv1", stride=1, padding=1)
    conv2 = load_conv1d(root / "conv2", stride=2, padding=1)

    n_layer = _load_count("n_layer", root)
    if n_layer < 1:
        raise ValueError(f"{root}: the audio encoder needs at least one block")
    blocks = [load_residual_encoder_attention_block(root / f"block_{i}") for i in range(n_layer)]

    ln_post = load_layer_norm(root / "ln_post")
    positional_embedding = load_tensor("positional_embedding", root, 2)
    n_audio_ctx = positional_embedding.shape[0]

    encoder = AudioEncoder(
        conv1=conv1,
        conv2=conv2,
        blocks=blocks,
        ln_post=ln_post,
        positional_embedding=positional_embedding,
        n_mels=n_mels,
        n_audio_ctx=n_audio_ctx,
    )
    config = AudioEncoderConfig(
        n_mels=n_mels,
        n_audio_ctx=n_audio_ctx,
        n_audio_state=n_audio_state,
        n_audio_head=blocks[0].attn.n_head,
        n_audio_layer=n_layer,
    )
    return encoder, config


def load_text_decoder(path) -> tuple[TextDecoder, TextDecoderConfig]:
    """Load the text decoder and the configuration it implies."""
    root = Path(path)
    token_embedding = load_tensor("token_embedding/weight", root, 2)
    positional_embedding = load_tensor("positional_embedding", root, 2)

    n_layer = _load_count("n_layer", root)
    if n_layer < 1:
        raise ValueError(f"{root}: the text decoder needs at least one block")
    blocks = [load_residual_decoder_attention_block(root / f"block_{i}") for i in range(n_layer)]

    ln = load_layer_norm(root / "ln")

    n_text_ctx, n_text_state = positional_embedding.shape
    n_vocab = token_embedding.shape[0]

    decoder = TextDecoder(
        token_embedding=token_embedding,
        positional_embedding=positional_embedding,
        blocks=blocks,
        ln=ln,
        mask=attn_decoder_mask(n_text_ctx),
        n_vocab=n_vocab,
        n_text_ctx=n_text_ctx,
    )
    config = TextDecoderConfig(
        n_vocab=n_vocab,
        n_text_ctx=n_text_ctx,
        n_text_state=n_text_state,
        n_text_head=blocks[0].attn.n_head,
        n_text_layer=n_layer,
    )
    return decoder, config


def load_whisper(path) -> tuple[Whisper, WhisperConfig]:
    """Load a whole model from ``<path>/encoder`` and ``<path>/decoder``."""
    root = Path(path)
    encoder, encoder_config = load_audio_encoder(root / "encoder")
    decoder, decoder_config = load_text_decoder(root / "decoder")
    return (
        Whisper(encoder=encoder, decoder=decoder),
        WhisperConfig(audio_encoder_config=encoder_config, text_decoder_config=decoder_config),
    )