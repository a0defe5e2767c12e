import numpy as np
import pytest

from tinywhisper.model import (
    AudioEncoderConfig,
    Conv1d,
    LayerNorm,
    Linear,
    MLPConfig,
    MultiHeadCrossAttentionConfig,
    MultiHeadSelfAttentionConfig,
    ResidualDecoderAttentionBlockConfig,
    ResidualEncoderAttentionBlockConfig,
    TextDecoderConfig,
    WhisperConfig,
    attn_decoder_mask,
    gelu,
    qkv_attention,
)


def _config(n_audio_state=8, n_text_state=8):
    return WhisperConfig(
        audio_encoder_config=AudioEncoderConfig(
            n_mels=4, n_audio_ctx=6, n_audio_state=n_audio_state, n_audio_head=2, n_audio_layer=1
        ),
        text_decoder_config=TextDecoderConfig(
            n_vocab=10, n_text_ctx=5, n_text_state=n_text_state, n_text_head=2, n_text_layer=2
        ),
    )


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def whisper(rng):
    return _config().init(rng)


def test_attn_decoder_mask_is_causal():
    mask = attn_decoder_mask(3)
    assert mask.shape == (3, 3)
    assert np.all(np.tril(mask) == 0.0)
    assert np.all(np.isneginf(mask[np.triu_indices(3, k=1)]))


def test_attn_decoder_mask_single_is_zero():
    assert np.array_equal(attn_decoder_mask(1), np.zeros((1, 1)))


def test_attn_decoder_mask_rejects_empty():
    with pytest.raises(ValueError):
        attn_decoder_mask(0)


def test_qkv_attention_masked_first_position_copies_value(rng):
    q = rng.normal(size=(2, 4, 6))
    k = rng.normal(size=(2, 4, 6))
    v = rng.normal(size=(2, 4, 6))
    out = qkv_attention(q, k, v, attn_decoder_mask(4), 3)
    assert out.shape == (2, 4, 6)
    assert np.allclose(out[:, 0], v[:, 0])


def test_qkv_attention_zero_query_averages_values(rng):
    v = rng.normal(size=(1, 5, 4))
    k = rng.normal(size=(1, 5, 4))
    out = qkv_attention(np.zeros((1, 2, 4)), k, v, None, 2)
    assert np.allclose(out, np.broadcast_to(v.mean(axis=1, keepdims=True), (1, 2, 4)))


def test_linear_forward_identity_plus_bias():
    layer = Linear(np.eye(3), np.array([1.0, 2.0, 3.0]))
    x = np.array([[4.0, 5.0, 6.0]])
    assert np.allclose(layer.forward(x), x + np.array([1.0, 2.0, 3.0]))


def test_layer_norm_normalises_last_axis(rng):
    ln = LayerNorm.new(16)
    out = ln.forward(rng.normal(3.0, 5.0, size=(2, 3, 16)))
    assert np.allclose(out.mean(axis=-1), 0.0, atol=1e-9)
    assert np.allclose(out.var(axis=-1), 1.0, atol=1e-3)


def test_conv1d_centre_tap_is_identity(rng):
    weight = np.zeros((2, 2, 3))
    weight[0, 0, 1] = 1.0
    weight[1, 1, 1] = 1.0
    conv = Conv1d(weight, np.zeros(2), stride=1, padding=1)
    x = rng.normal(size=(1, 2, 7))
    assert np.allclose(conv.forward(x), x)


def test_conv1d_stride_two_halves_length(rng):
    conv = Conv1d.random(2, 3, 3, rng, stride=2, padding=1)
    assert conv.forward(rng.normal(size=(1, 2, 8))).shape == (1, 3, 4)


def test_gelu_limits():
    out = gelu(np.array([0.0, 20.0, -20.0]))
    assert out[0] == 0.0
    assert out[1] == pytest.approx(20.0)
    assert out[2] == pytest.approx(0.0, abs=1e-12)


def test_mlp_keeps_state_size(rng):
    mlp = MLPConfig(4).init(rng)
    assert mlp.lin1.weight.shape == (4, 16)
    assert mlp.forward(rng.normal(size=(1, 3, 4))).shape == (1, 3, 4)


def test_attention_rejects_indivisible_heads(rng):
    with pytest.raises(ValueError):
        MultiHeadSelfAttentionConfig(5, 2).init(rng)
    with pytest.raises(ValueError):
        MultiHeadCrossAttentionConfig(5, 2).init(rng)


def test_attention_key_has_no_bias(rng):
    attn = MultiHeadSelfAttentionConfig(4, 2).init(rng)
    assert attn.key.bias is None
    assert attn.query.bias.shape == (4,)


def test_cross_attention_output_follows_query_length(rng):
    attn = MultiHeadCrossAttentionConfig(4, 2).init(rng)
    out = attn.forward(rng.normal(size=(1, 3, 4)), rng.normal(size=(1, 7, 4)))
    assert out.shape == (1, 3, 4)


def test_blocks_preserve_shape(rng):
    enc = ResidualEncoderAttentionBlockConfig(4, 2).init(rng)
    dec = ResidualDecoderAttentionBlockConfig(4, 2).init(rng)
    x = rng.normal(size=(1, 3, 4))
    assert enc.forward(x).shape == (1, 3, 4)
    assert dec.forward(x, rng.normal(size=(1, 5, 4)), attn_decoder_mask(3)).shape == (1, 3, 4)


def test_whisper_forward_shape(whisper, rng):
    mel = rng.normal(size=(1, 4, 6))
    logits = whisper.forward(mel, np.array([[1, 2, 3]]))
    assert logits.shape == (1, 3, 10)
    assert np.all(np.isfinite(logits))


def test_encoder_output_shape(whisper, rng):
    out = whisper.forward_encoder(rng.normal(size=(2, 4, 6)))
    assert out.shape == (2, 3, 8)


def test_decoder_is_causal(whisper, rng):
    encoded = whisper.forward_encoder(rng.normal(size=(1, 4, 6)))
    a = whisper.forward_decoder(np.array([[1, 2, 3, 4]]), encoded)
    b = whisper.forward_decoder(np.array([[1, 2, 9, 0]]), encoded)
    assert np.allclose(a[:, :2], b[:, :2])
    assert not np.allclose(a[:, 2:], b[:, 2:])


def test_encoder_rejects_bad_input(whisper, rng):
    with pytest.raises(ValueError):
        whisper.forward_encoder(rng.normal(size=(1, 3, 6)))
    with pytest.raises(ValueError):
        whisper.forward_encoder(rng.normal(size=(1, 4, 7)))


def test_decoder_rejects_long_sequence(whisper, rng):
    encoded = whisper.forward_encoder(rng.normal(size=(1, 4, 6)))
    with pytest.raises(ValueError):
        whisper.forward_decoder(np.zeros((1, 6), dtype=int), encoded)


def test_ctx_sizes(whisper):
    assert whisper.encoder_ctx_size() == 6
    assert whisper.decoder_ctx_size() == 5


def test_mismatched_state_sizes_rejected(rng):
    with pytest.raises(ValueError):
        _config(n_audio_state=8, n_text_state=4).init(rng)


def test_config_save_load_round_trip(tmp_path):
    config = _config()
    path = tmp_path / "model.cfg"
    config.save(path)
    assert WhisperConfig.load(path) == config


def test_config_dict_round_trip_and_errors():
    config = _config()
    assert WhisperConfig.from_dict(config.to_dict()) == config
    with pytest.raises(ValueError):
        WhisperConfig.from_dict({"audio_encoder_config": {}})


def test_state_dict_contents(whisper):
    state = whisper.state_dict()
    assert state["decoder.token_embedding"].shape == (10, 8)
    assert state["encoder.conv1.weight"].shape == (8, 4, 3)
    assert "decoder.blocks.1.cross_attn.query.weight" in state
    assert "encoder.blocks.0.attn.key.bias" not in state