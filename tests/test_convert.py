import numpy as np
import pytest

from tinywhisper.convert import main, save_whisper
from tinywhisper.model import AudioEncoderConfig, TextDecoderConfig, WhisperConfig


def _write(directory, name, array):
    array = np.asarray(array, dtype=np.float64)
    target = directory / f"{name}.npy"
    target.parent.mkdir(parents=True, exist_ok=True)
    flat = np.concatenate([np.array(array.shape, dtype=np.float64), array.ravel()])
    np.save(target, flat.astype(np.float32))


def _dump_linear(d, lin):
    _write(d, "weight", lin.weight)
    if lin.bias is not None:
        _write(d, "bias", lin.bias)


def _dump_ln(d, ln):
    _write(d, "weight", ln.gamma)
    _write(d, "bias", ln.beta)
    _write(d, "eps", [ln.epsilon])


def _dump_attn(d, attn):
    for name in ("query", "key", "value", "out"):
        _dump_linear(d / name, getattr(attn, name))
    _write(d, "n_head", [attn.n_head])


def _dump_block(d, block):
    _dump_attn(d / "attn", block.attn)
    _dump_ln(d / "attn_ln", block.attn_ln)
    _dump_linear(d / "mlp" / "mlp1", block.mlp.lin1)
    _dump_linear(d / "mlp" / "mlp2", block.mlp.lin2)
    _dump_ln(d / "mlp_ln", block.mlp_ln)
    if hasattr(block, "cross_attn"):
        _dump_attn(d / "cross_attn", block.cross_attn)
        _dump_ln(d / "cross_attn_ln", block.cross_attn_ln)


def _dump_model(root, whisper, config):
    enc = root / "encoder"
    _write(enc, "n_mels", [config.audio_encoder_config.n_mels])
    _write(enc, "n_audio_state", [config.audio_encoder_config.n_audio_state])
    for name in ("conv1", "conv2"):
        conv = getattr(whisper.encoder, name)
        _write(enc / name, "weight", conv.weight)
        _write(enc / name, "bias", conv.bias)
    _write(enc, "n_layer", [len(whisper.encoder.blocks)])
    for i, block in enumerate(whisper.encoder.blocks):
        _dump_block(enc / f"block_{i}", block)
    _dump_ln(enc / "ln_post", whisper.encoder.ln_post)
    _write(enc, "positional_embedding", whisper.encoder.positional_embedding)

    dec = root / "decoder"
    _write(dec, "token_embedding/weight", whisper.decoder.token_embedding)
    _write(dec, "positional_embedding", whisper.decoder.positional_embedding)
    _write(dec, "n_layer", [len(whisper.decoder.blocks)])
    for i, block in enumerate(whisper.decoder.blocks):
        _dump_block(dec / f"block_{i}", block)
    _dump_ln(dec / "ln", whisper.decoder.ln)


@pytest.fixture
def config():
    return WhisperConfig(
        audio_encoder_config=AudioEncoderConfig(
            n_mels=4, n_audio_ctx=4, n_audio_state=8, n_audio_head=2, n_audio_layer=1
        ),
        text_decoder_config=TextDecoderConfig(
            n_vocab=10, n_text_ctx=6, n_text_state=8, n_text_head=2, n_text_layer=1
        ),
    )


def test_main_without_arguments(capsys):
    assert main([]) == 1
    assert "Model dump folder not provided" in capsys.readouterr().err


def test_main_with_missing_folder(tmp_path, capsys):
    missing = tmp_path / "nothing"
    assert main([str(missing)]) == 1
    assert f"Error loading model {missing}" in capsys.readouterr().err


def test_main_converts_dump(tmp_path, config, capsys):
    whisper = config.init(np.random.default_rng(5))
    root = tmp_path / "tiny"
    _dump_model(root, whisper, config)

    assert main([str(root)]) == 0
    out = capsys.readouterr().out
    assert out.splitlines() == ["Saving model...", "Saving config...", "Finished."]

    assert WhisperConfig.load(tmp_path / "tiny.cfg") == config
    with np.load(tmp_path / "tiny.npz") as saved:
        assert set(saved.files) == set(whisper.state_dict())
        np.testing.assert_allclose(
            saved["decoder.token_embedding"],
            whisper.decoder.token_embedding.astype(np.float32),
            rtol=1e-6,
        )


def test_save_whisper_round_trip(tmp_path, config):
    whisper = config.init(np.random.default_rng(11))
    target = save_whisper(whisper, tmp_path / "saved")
    assert target == tmp_path / "saved.npz"
    state = whisper.state_dict()
    with np.load(target) as saved:
        assert set(saved.files) == set(state)
        for key, value in state.items():
            np.testing.assert_array_equal(saved[key], value)