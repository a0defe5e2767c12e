"""Encoder-decoder transformer used for speech recognition, evaluated with numpy."""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterator

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

_NamedArrays = Iterator[tuple[str, np.ndarray]]


def _rng_or_default(rng) -> np.random.Generator:
    return rng if rng is not None else np.random.default_rng()


def _uniform(rng: np.random.Generator, fan_in: int, shape) -> np.ndarray:
    bound = 1.0 / math.sqrt(fan_in) if fan_in > 0 else 0.0
    return rng.uniform(-bound, bound, size=shape)


_erf = np.vectorize(math.erf, otypes=[np.float64])


def gelu(x) -> np.ndarray:
    """Exact Gaussian error linear unit."""
    x = np.asarray(x, dtype=np.float64)
    return 0.5 * x * (1.0 + _erf(x / math.sqrt(2.0)))


def _softmax(x: np.ndarray, axis: int) -> np.ndarray:
    shifted = x - np.max(x, axis=axis, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=axis, keepdims=True)


@dataclass
class Linear:
    """Affine layer; ``weight`` has shape ``(d_input, d_output)``."""

    weight: np.ndarray
    bias: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.weight = np.asarray(self.weight, dtype=np.float64)
        if self.weight.ndim != 2:
            raise ValueError("linear weight must be two-dimensional")
        if self.bias is not None:
            self.bias = np.asarray(self.bias, dtype=np.float64)
            if self.bias.shape != (self.weight.shape[1],):
                raise ValueError("linear bias size must match the output size")

    @classmethod
    def random(cls, d_input: int, d_output: int, rng, bias: bool = True) -> "Linear":
        weight = _uniform(rng, d_input, (d_input, d_output))
        b = _uniform(rng, d_input, (d_output,)) if bias else None
        return cls(weight, b)

    def forward(self, x) -> np.ndarray:
        out = np.asarray(x, dtype=np.float64) @ self.weight
        if self.bias is not None:
            out = out + self.bias
        return out

    def _named_arrays(self, prefix: str) -> _NamedArrays:
        yield f"{prefix}.weight", self.weight
        if self.bias is not None:
            yield f"{prefix}.bias", self.bias


@dataclass
class LayerNorm:
    """Layer normalisation over the last axis."""

    gamma: np.ndarray
    beta: np.ndarray
    epsilon: float = 1e-5

    def __post_init__(self) -> None:
        self.gamma = np.asarray(self.gamma, dtype=np.float64)
        self.beta = np.asarray(self.beta, dtype=np.float64)
        if self.gamma.shape != self.beta.shape or self.gamma.ndim != 1:
            raise ValueError("layer norm gamma and beta must be vectors of the same size")

    @classmethod
    def new(cls, n_state: int) -> "LayerNorm":
        return cls(np.ones(n_state), np.zeros(n_state))

    def forward(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        mean = x.mean(axis=-1, keepdims=True)
        var = ((x - mean) ** 2).mean(axis=-1, keepdims=True)
        return (x - mean) / np.sqrt(var + self.epsilon) * self.gamma + self.beta

    def _named_arrays(self, prefix: str) -> _NamedArrays:
        yield f"{prefix}.gamma", self.gamma
        yield f"{prefix}.beta", self.beta


@dataclass
class Conv1d:
    """1-D convolution; ``weight`` has shape ``(channels_out, channels_in, kernel_size)``."""

    weight: np.ndarray
    bias: np.ndarray | None = None
    stride: int = 1
    padding: int = 0

    def __post_init__(self) -> None:
        self.weight = np.asarray(self.weight, dtype=np.float64)
        if self.weight.ndim != 3:
            raise ValueError("conv1d weight must be three-dimensional")
        if self.bias is not None:
            self.bias = np.asarray(self.bias, dtype=np.float64)
        if self.stride < 1:
            raise ValueError("stride must be positive")

    @classmethod
    def random(cls, channels_in: int, channels_out: int, kernel_size: int, rng,
               stride: int = 1, padding: int = 0) -> "Conv1d":
        fan_in = channels_in * kernel_size
        weight = _uniform(rng, fan_in, (channels_out, channels_in, kernel_size))
        bias = _uniform(rng, fan_in, (channels_out,))
        return cls(weight, bias, stride, padding)

    def forward(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        if x.ndim != 3 or x.shape[1] != self.weight.shape[1]:
            raise ValueError(f"input must have shape (batch, {self.weight.shape[1]}, length)")
        kernel = self.weight.shape[2]
        x = np.pad(x, ((0, 0), (0, 0), (self.padding, self.padding)))
        if x.shape[2] < kernel:
            raise ValueError("input is shorter than the convolution kernel")
        windows = sliding_window_view(x, kernel, axis=2)[:, :, :: self.stride, :]
        out = np.einsum("bilk,oik->bol", windows, self.weight)
        if self.bias is not None:
            out = out + self.bias[np.newaxis, :, np.newaxis]
        return out

    def _named_arrays(self, prefix: str) -> _NamedArrays:
        yield f"{prefix}.weight", self.weight
        if self.bias is not None:
            yield f"{prefix}.bias", self.bias


@dataclass
class MLP:
    """Two-layer feed-forward network with a GELU between the layers."""

    lin1: Linear
    lin2: Linear

    def forward(self, x) -> np.ndarray:
        return self.lin2.forward(gelu(self.lin1.forward(x)))

    def _named_arrays(self, prefix: str) -> _NamedArrays:
        yield from self.lin1._named_arrays(f"{prefix}.lin1")
        yield from self.lin2._named_arrays(f"{prefix}.lin2")


@dataclass
class MLPConfig:
    n_state: int

    def init(self, rng=None) -> MLP:
        rng = _rng_or_default(rng)
        return MLP(
            lin1=Linear.random(self.n_state, 4 * self.n_state, rng),
            lin2=Linear.random(4 * self.n_state, self.n_state, rng),
        )


def _check_heads(n_state: int, n_head: int) -> None:
    if n_head < 1 or n_state % n_head != 0:
        raise ValueError(f"State size {n_state} must be a multiple of head size {n_head}")


def _attention_layers(n_state: int, rng) -> dict[str, Linear]:
    return {
        "query": Linear.random(n_state, n_state, rng),
        "key": Linear.random(n_state, n_state, rng, bias=False),
        "value": Linear.random(n_state, n_state, rng),
        "out": Linear.random(n_state, n_state, rng),
    }


@dataclass
class _Attention:
    n_head: int
    query: Linear
    key: Linear
    value: Linear
    out: Linear

    def _named_arrays(self, prefix: str) -> _NamedArrays:
        for name in ("query", "key", "value", "out"):
            yield from getattr(self, name)._named_arrays(f"{prefix}.{name}")


@dataclass
class MultiHeadSelfAttention(_Attention):
    """Multi-head attention of a sequence over itself."""

    def forward(self, x, mask=None) -> np.ndarray:
        q = self.query.forward(x)
        k = self.key.forward(x)
        v = self.value.forward(x)
        return self.out.forward(qkv_attention(q, k, v, mask, self.n_head))


@dataclass
class MultiHeadSelfAttentionConfig:
    n_state: int
    n_head: int

    def init(self, rng=None) -> MultiHeadSelfAttention:
        _check_heads(self.n_state, self.n_head)
        return MultiHeadSelfAttention(self.n_head, **_attention_layers(self.n_state, _rng_or_default(rng)))


@dataclass
class MultiHeadCrossAttention(_Attention):
    """Multi-head attention of a sequence over an encoded context."""

    def forward(self, x, xa) -> np.ndarray:
        q = self.query.forward(x)
        k = self.key.forward(xa)
        v = self.value.forward(xa)
        return self.out.forward(qkv_attention(q, k, v, None, self.n_head))


@dataclass
class MultiHeadCrossAttentionConfig:
    n_state: int
    n_head: int

    def init(self, rng=None) -> MultiHeadCrossAttention:
        _check_heads(self.n_state, self.n_head)
        return MultiHeadCrossAttention(self.n_head, **_attention_layers(self.n_state, _rng_or_default(rng)))


@dataclass
class ResidualEncoderAttentionBlock:
    attn: MultiHeadSelfAttention
    attn_ln: LayerNorm
    mlp: MLP
    mlp_ln: LayerNorm

    def forward(self, x) -> np.ndarray:
        x = x + self.attn.forward(self.attn_ln.forward(x), None)
        return x + self.mlp.forward(self.mlp_ln.forward(x))

    def _named_arrays(self, prefix: str) -> _NamedArrays:
        yield from self.attn._named_arrays(f"{prefix}.attn")
        yield from self.attn_ln._named_arrays(f"{prefix}.attn_ln")
        yield from self.mlp._named_arrays(f"{prefix}.mlp")
        yield from self.mlp_ln._named_arrays(f"{prefix}.mlp_ln")


@dataclass
class ResidualEncoderAttentionBlockConfig:
    n_state: int
    n_head: int

    def init(self, rng=None) -> ResidualEncoderAttentionBlock:
        rng = _rng_or_default(rng)
        return ResidualEncoderAttentionBlock(
            attn=MultiHeadSelfAttentionConfig(self.n_state, self.n_head).init(rng),
            attn_ln=LayerNorm.new(self.n_state),
            mlp=MLPConfig(self.n_state).init(rng),
            mlp_ln=LayerNorm.new(self.n_state),
        )


@dataclass
class ResidualDecoderAttentionBlock:
    attn: MultiHeadSelfAttention
    attn_ln: LayerNorm
    cross_attn: MultiHeadCrossAttention
    cross_attn_ln: LayerNorm
    mlp: MLP
    mlp_ln: LayerNorm

    def forward(self, x, xa, mask) -> np.ndarray:
        x = x + self.attn.forward(self.attn_ln.forward(x), mask)
        x = x + self.cross_attn.forward(self.cross_attn_ln.forward(x), xa)
        return x + self.mlp.forward(self.mlp_ln.forward(x))

    def _named_arrays(self, prefix: str) -> _NamedArrays:
        yield from self.attn._named_arrays(f"{prefix}.attn")
        yield from self.attn_ln._named_arrays(f"{prefix}.attn_ln")
        yield from self.cross_attn._named_arrays(f"{prefix}.cross_attn")
        yield from self.cross_attn_ln._named_arrays(f"{prefix}.cross_attn_ln")
        yield from self.mlp._named_arrays(f"{prefix}.mlp")
        yield from self.mlp_ln._named_arrays(f"{prefix}.mlp_ln")


@dataclass
class ResidualDecoderAttentionBlockConfig:
    n_state: int
    n_head: int

    def init(self, rng=None) -> ResidualDecoderAttentionBlock:
        rng = _rng_or_default(rng)
        return ResidualDecoderAttentionBlock(
            attn=MultiHeadSelfAttentionConfig(self.n_state, self.n_head).init(rng),
            attn_ln=LayerNorm.new(self.n_state),
            cross_attn=MultiHeadCrossAttentionConfig(self.n_state, self.n_head).init(rng),
            cross_attn_ln=LayerNorm.new(self.n_state),
            mlp=MLPConfig(self.n_state).init(rng),
            mlp_ln=LayerNorm.new(self.n_state),
        )


@dataclass
class AudioEncoder:
    """Convolutional stem followed by transformer blocks over mel frames."""

    conv1: Conv1d
    conv2: Conv1d
    blocks: list[ResidualEncoderAttentionBlock]
    ln_post: LayerNorm
    positional_embedding: np.ndarray
    n_mels: int
    n_audio_ctx: int

    def forward(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        if x.ndim != 3:
            raise ValueError("mel input must have shape (n_batch, n_mels, n_ctx)")
        _, n_mels, n_ctx = x.shape
        if n_mels != self.n_mels:
            raise ValueError(f"Audio mel spectrum size must be {self.n_mels}.")
        if n_ctx > self.n_audio_ctx:
            raise ValueError(f"Audio length {n_ctx} cannot exceed {self.n_audio_ctx}.")

        x = gelu(self.conv1.forward(x))
        x = gelu(self.conv2.forward(x))
        x = x.transpose(0, 2, 1)
        x = x + self.positional_embedding[: x.shape[1]][np.newaxis]

        for block in self.blocks:
            x = block.forward(x)
        return self.ln_post.forward(x)

    def ctx_size(self) -> int:
        return self.n_audio_ctx

    def _named_arrays(self, prefix: str) -> _NamedArrays:
        yield from self.conv1._named_arrays(f"{prefix}.conv1")
        yield from self.conv2._named_arrays(f"{prefix}.conv2")
        for i, block in enumerate(self.blocks):
            yield from block._named_arrays(f"{prefix}.blocks.{i}")
        yield from self.ln_post._named_arrays(f"{prefix}.ln_post")
        yield f"{prefix}.positional_embedding", self.positional_embedding


@dataclass
class AudioEncoderConfig:
    n_mels: int
    n_audio_ctx: int
    n_audio_state: int
    n_audio_head: int
    n_audio_layer: int

    def init(self, rng=None) -> AudioEncoder:
        rng = _rng_or_default(rng)
        conv1 = Conv1d.random(self.n_mels, self.n_audio_state, 3, rng, stride=1, padding=1)
        conv2 = Conv1d.random(self.n_audio_state, self.n_audio_state, 3, rng, stride=2, padding=1)
        blocks = [
            ResidualEncoderAttentionBlockConfig(self.n_audio_state, self.n_audio_head).init(rng)
            for _ in range(self.n_audio_layer)
        ]
        return AudioEncoder(
            conv1=conv1,
            conv2=conv2,
            blocks=blocks,
            ln_post=LayerNorm.new(self.n_audio_state),
            positional_embedding=rng.normal(0.0, 1.0, (self.n_audio_ctx, self.n_audio_state)),
            n_mels=self.n_mels,
            n_audio_ctx=self.n_audio_ctx,
        )


@dataclass
class TextDecoder:
    """Causal transformer over tokens, attending to the encoded audio."""

    token_embedding: np.ndarray
    positional_embedding: np.ndarray
    blocks: list[ResidualDecoderAttentionBlock]
    ln: LayerNorm
    mask: np.ndarray
    n_vocab: int
    n_text_ctx: int

    def forward(self, tokens, xa) -> np.ndarray:
        tokens = np.asarray(tokens, dtype=np.int64)
        if tokens.ndim != 2:
            raise ValueError("tokens must have shape (n_batch, seq_len)")
        seq_len = tokens.shape[1]
        if seq_len > self.n_text_ctx:
            raise ValueError(f"Token sequence length {seq_len} must not exceed {self.n_text_ctx}.")

        x = self.token_embedding[tokens] + self.positional_embedding[:seq_len][np.newaxis]
        xa = np.asarray(xa, dtype=np.float64)
        for block in self.blocks:
            x = block.forward(x, xa, self.mask)

        x = self.ln.forward(x)
        return x @ self.token_embedding.T

    def ctx_size(self) -> int:
        return self.n_text_ctx

    def _named_arrays(self, prefix: str) -> _NamedArrays:
        yield f"{prefix}.token_embedding", self.token_embedding
        yield f"{prefix}.positional_embedding", self.positional_embedding
        for i, block in enumerate(self.blocks):
            yield from block._named_arrays(f"{prefix}.blocks.{i}")
        yield from self.ln._named_arrays(f"{prefix}.ln")
        yield f"{prefix}.mask", self.mask


@dataclass
class TextDecoderConfig:
    n_vocab: int
    n_text_ctx: int
    n_text_state: int
    n_text_head: int
    n_text_layer: int

    def init(self, rng=None) -> TextDecoder:
        rng = _rng_or_default(rng)
        token_embedding = rng.normal(0.0, 1.0, (self.n_vocab, self.n_text_state))
        positional_embedding = rng.normal(0.0, 1.0, (self.n_text_ctx, self.n_text_state))
        blocks = [
            ResidualDecoderAttentionBlockConfig(self.n_text_state, self.n_text_head).init(rng)
            for _ in range(self.n_text_layer)
        ]
        return TextDecoder(
            token_embedding=token_embedding,
            positional_embedding=positional_embedding,
            blocks=blocks,
            ln=LayerNorm.new(self.n_text_state),
            mask=attn_decoder_mask(self.n_text_ctx),
            n_vocab=self.n_vocab,
            n_text_ctx=self.n_text_ctx,
        )


@dataclass
class Whisper:
    """Audio encoder paired with a text decoder."""

    encoder: AudioEncoder
    decoder: TextDecoder

    def forward(self, mel, tokens) -> np.ndarray:
        return self.decoder.forward(tokens, self.encoder.forward(mel))

    def forward_encoder(self, mel) -> np.ndarray:
        return self.encoder.forward(mel)

    def forward_decoder(self, tokens, encoder_output) -> np.ndarray:
        return self.decoder.forward(tokens, encoder_output)

    def encoder_ctx_size(self) -> int:
        return self.encoder.ctx_size()

    def decoder_ctx_size(self) -> int:
        return self.decoder.ctx_size()

    def state_dict(self) -> dict[str, np.ndarray]:
        """All parameter arrays, keyed by dotted path."""
        return {
            **dict(self.encoder._named_arrays("encoder")),
            **dict(self.decoder._named_arrays("decoder")),
        }


@dataclass
class WhisperConfig:
    audio_encoder_config: AudioEncoderConfig
    text_decoder_config: TextDecoderConfig = field()

    def init(self, rng=None) -> Whisper:
        n_audio_state = self.audio_encoder_config.n_audio_state
        n_text_state = self.text_decoder_config.n_text_state
        if n_audio_state != n_text_state:
            raise ValueError(
                f"Audio encoder state size {n_audio_state} must be equal to "
                f"text decoder state size {n_text_state}."
            )
        rng = _rng_or_default(rng)
        return Whisper(
            encoder=self.audio_encoder_config.init(rng),
            decoder=self.text_decoder_config.init(rng),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "WhisperConfig":
        try:
            return cls(
                audio_encoder_config=AudioEncoderConfig(**data["audio_encoder_config"]),
                text_decoder_config=TextDecoderConfig(**data["text_decoder_config"]),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"invalid whisper config: {exc}") from exc

    def save(self, path) -> None:
        Path(path).write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")

    @classmethod
    def load(cls, path) -> "WhisperConfig":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))


def qkv_attention(q, k, v, mask, n_head: int) -> np.ndarray:
    """Scaled dot-product attention split across ``n_head`` heads."""
    q = np.asarray(q, dtype=np.float64)
    k = np.asarray(k, dtype=np.float64)
    v = np.asarray(v, dtype=np.float64)
    n_batch, n_qctx, n_state = q.shape
    n_ctx = k.shape[1]
    _check_heads(n_state, n_head)

    scale = (n_state / n_head) ** -0.25
    n_hstate = n_state // n_head

    qh = q.reshape(n_batch, n_qctx, n_head, n_hstate).transpose(0, 2, 1, 3) * scale
    kh = k.reshape(n_batch, n_ctx, n_head, n_hstate).transpose(0, 2, 3, 1) * scale
    vh = v.reshape(n_batch, n_ctx, n_head, n_hstate).transpose(0, 2, 1, 3)

    qk = qh @ kh
    if mask is not None:
        qk = qk + np.asarray(mask, dtype=np.float64)[:n_qctx, :n_ctx]

    w = _softmax(qk, axis=3)
    return (w @ vh).transpose(0, 2, 1, 3).reshape(n_batch, n_qctx, n_state)


def attn_decoder_mask(seq_length: int) -> np.ndarray:
    """Causal mask: zero on and below the diagonal, negative infinity above it."""
    if seq_length < 1:
        raise ValueError("seq_length must be at least 1")
    return np.triu(np.full((seq_length, seq_length), -np.inf), k=1)