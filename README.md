# tinywhisper

Building blocks for a Whisper-style speech recognition model, computed with
NumPy in double precision:

- `tinywhisper.audio` turns a batch of waveforms into normalised log-mel
  spectrograms (80 mel bands, 400-point FFT, hop of 160 samples, periodic Hann
  window, reflection padding).
- `tinywhisper.model` holds the audio encoder, the text decoder and the
  combined `Whisper` model, their configuration classes, and the layers they
  are made of (`Linear`, `LayerNorm`, `Conv1d`, `MLP`, self- and
  cross-attention).
- `tinywhisper.beam` is a generic beam search over token sequences.
- `tinywhisper.load` builds a model from a folder of `.npy` parameter dumps.
- `tinywhisper.convert` is a command that packs such a dump into one `.npz`
  weights file and a JSON configuration file.
- `tinywhisper.helper` holds small element-wise array helpers.

## Installation

```
pip install .
```

## Audio features

```python
import numpy as np
from tinywhisper.audio import prep_audio, max_waveform_samples

waveform = np.zeros((1, max_waveform_samples(3000)))
mel = prep_audio(waveform, 16000.0)  # shape (1, 80, n_frame), n_frame <= 3000
```

`prep_audio` takes an array of shape `(n_batch, n_samples)` with at least 400
samples per row. `max_waveform_samples(n)` is the longest waveform that still
yields at most `n` frames. Lower-level pieces are available too:
`stfft`, `hann_window`, `get_mel_filters`, `fft_frequencies`,
`mel_frequencies`, `hz_to_mel` and `mel_to_hz` (the last three support both
the HTK and the Slaney mel scale). `get_mel_filters` emits a `UserWarning`
when a mel band ends up empty.

## The model

A model can be created with random weights from a configuration:

```python
import numpy as np
from tinywhisper.model import AudioEncoderConfig, TextDecoderConfig, WhisperConfig

config = WhisperConfig(
    audio_encoder_config=AudioEncoderConfig(
        n_mels=80, n_audio_ctx=1500, n_audio_state=384, n_audio_head=6, n_audio_layer=4
    ),
    text_decoder_config=TextDecoderConfig(
        n_vocab=51865, n_text_ctx=448, n_text_state=384, n_text_head=6, n_text_layer=4
    ),
)
whisper = config.init(np.random.default_rng(0))
```

The encoder and decoder state sizes must be equal, and each state size must be
a multiple of its head count; otherwise `ValueError` is raised.

```python
encoded = whisper.forward_encoder(mel)               # (n_batch, n_ctx // 2, n_state)
logits = whisper.forward_decoder(tokens, encoded)    # (n_batch, seq_len, n_vocab)
logits = whisper.forward(mel, tokens)                # both steps at once
```

`tokens` is an integer array of shape `(n_batch, seq_len)`; `seq_len` may not
exceed `whisper.decoder_ctx_size()`, and the number of mel frames may not
exceed `whisper.encoder_ctx_size()`. The decoder applies a causal mask
(`attn_decoder_mask`).

`WhisperConfig` can be written to and read from JSON with `save(path)` and
`WhisperConfig.load(path)`, or converted with `to_dict()` / `from_dict()`.
`Whisper.state_dict()` returns every parameter array keyed by a dotted path
such as `encoder.blocks.0.attn.query.weight`.

## Loading a parameter dump

```python
from tinywhisper.load import load_whisper

whisper, config = load_whisper("dumps/tiny")
```

Each `.npy` file holds a flat float array: the first `ndim` entries are the
tensor's shape and the rest are its values in row-major order. Scalars such as
`n_layer` or `eps` are stored as one-dimensional arrays of length one. The
folder is laid out as:

```
<path>/encoder/n_mels.npy, n_audio_state.npy, n_layer.npy, positional_embedding.npy
<path>/encoder/conv1/{weight,bias}.npy            (also conv2)
<path>/encoder/block_<i>/attn/{query,key,value,out}/weight.npy  (bias.npy optional)
<path>/encoder/block_<i>/attn/n_head.npy
<path>/encoder/block_<i>/{attn_ln,mlp_ln}/{weight,bias,eps}.npy
<path>/encoder/block_<i>/mlp/{mlp1,mlp2}/{weight,bias}.npy
<path>/encoder/ln_post/{weight,bias,eps}.npy
<path>/decoder/token_embedding/weight.npy, positional_embedding.npy, n_layer.npy
<path>/decoder/block_<i>/...    as in the encoder, plus cross_attn/ and cross_attn_ln/
<path>/decoder/ln/{weight,bias,eps}.npy
```

Linear weights have shape `(d_input, d_output)`. The configuration is derived
from the loaded shapes. Malformed files raise `ValueError`; missing files
raise `OSError` (a missing linear bias is allowed).

## Converting a dump

```
tinywhisper-convert dumps/tiny
```

This loads the dump in `dumps/tiny`, writes all weights to `dumps/tiny.npz`
and the configuration as JSON to `dumps/tiny.cfg`. Errors are reported on
standard error and the command exits with status 1.

## Beam search

```python
from tinywhisper.beam import BeamNode, beam_search

best = beam_search(
    [BeamNode(seq=[start_token], log_prob=0.0)],
    next_fn,        # beams -> for each beam, a list of (token, log_prob)
    is_finished,    # seq -> bool
    beam_size=5,
    max_depth=100,
)
```

The `log_prob` returned by `next_fn` is taken as the total score of the
extended sequence; the search does not add it to the beam's previous score.
The search stops when the best beam is finished or after `max_depth` steps and
returns that beam's sequence. `beam_search_step` performs a single step.

## What the package does not do

There is no tokenizer, no reading of audio files and no end-to-end
transcription: turning audio into text requires supplying token ids, a
`next_fn` built on `Whisper.forward_decoder`, and a way to map tokens back to
text yourself.

## Tests

```
pip install .[test]
pytest
```