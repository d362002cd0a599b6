"""Integration tests for loading TorchScript models from disk."""

import base64
import json
import logging
from typing import List, Tuple

import numpy as np
import pytest

torch = pytest.importorskip("torch")

from streamasr.config import (  # noqa: E402
    CtcModelConfig,
    ModelConfig,
    ParaformerModelConfig,
    RecognizerConfig,
    TransducerModelConfig,
    WhisperModelConfig,
)
from streamasr.engine.fake import script_features  # noqa: E402
from streamasr.engine.torchscript import TorchCtcModel, load_model  # noqa: E402
from streamasr.exceptions import ConfigError  # noqa: E402
from streamasr.recognizer import Recognizer  # noqa: E402

VOCAB_SIZE = 6


class TinyCtc(torch.nn.Module):
    """Reads the scripted symbol from feature column 0."""

    def __init__(self, vocab_size: int):
        super().__init__()
        self.vocab_size = vocab_size

    def forward(self, x: torch.Tensor, x_lens: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        symbols = x[:, :, 0].round().long().clamp(0, self.vocab_size - 1)
        logits = torch.nn.functional.one_hot(symbols, self.vocab_size).float() * 10.0
        return logits.log_softmax(-1), x_lens


class TinyStreamingCtc(torch.nn.Module):
    """Streaming variant: decodes the window body and counts windows in its state."""

    def __init__(self, vocab_size: int, shift: int):
        super().__init__()
        self.vocab_size = vocab_size
        self.shift = shift

    @torch.jit.export
    def get_init_states(self) -> List[torch.Tensor]:
        return [torch.zeros(1, dtype=torch.int64)]

    def forward(
        self, x: torch.Tensor, x_lens: torch.Tensor, states: List[torch.Tensor]
    ) -> Tuple[torch.Tensor, torch.Tensor, List[torch.Tensor]]:
        body = x[:, : self.shift]
        symbols = body[:, :, 0].round().long().clamp(0, self.vocab_size - 1)
        logits = torch.nn.functional.one_hot(symbols, self.vocab_size).float() * 10.0
        out_lens = torch.full_like(x_lens, self.shift)
        return logits.log_softmax(-1), out_lens, [states[0] + 1]


class TinyTransducerEncoder(torch.nn.Module):
    def forward(self, x: torch.Tensor, x_lens: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        return x[:, :, :1].contiguous(), x_lens


class TinyTransducerDecoder(torch.nn.Module):
    """Stateless decoder; the extra axis is flattened by the backend."""

    def forward(self, y: torch.Tensor) -> torch.Tensor:
        return y.float().unsqueeze(1)


class TinyJoiner(torch.nn.Module):
    """Puts the scripted symbol of the encoder frame on top."""

    def __init__(self, vocab_size: int):
        super().__init__()
        self.vocab_size = vocab_size

    def forward(self, encoder_out: torch.Tensor, decoder_out: torch.Tensor) -> torch.Tensor:
        symbols = encoder_out[:, 0].round().long().clamp(0, self.vocab_size - 1)
        logits = torch.nn.functional.one_hot(symbols, self.vocab_size).float() * 10.0
        return logits.unsqueeze(1).unsqueeze(1)


class TinyParaformer(torch.nn.Module):
    """One output token per input frame."""

    def __init__(self, vocab_size: int):
        super().__init__()
        self.vocab_size = vocab_size

    def forward(self, x: torch.Tensor, x_lens: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        symbols = x[:, :, 0].round().long().clamp(0, self.vocab_size - 1)
        return torch.nn.functional.one_hot(symbols, self.vocab_size).float(), x_lens


class TinyWhisperEncoder(torch.nn.Module):
    """Copies the scripted symbols into both cross-attention caches."""

    def __init__(self, n_text_layer: int, n_text_state: int):
        super().__init__()
        self.n_text_layer = n_text_layer
        self.n_text_state = n_text_state

    def forward(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        cross = torch.zeros([self.n_text_layer, 1, x.shape[1], self.n_text_state])
        cross[:, 0, :, 0] = x[0, :, 0]
        return cross, cross.clone()


class TinyWhisperDecoder(torch.nn.Module):
    """Emits the non-zero scripted symbols in order, then end-of-text."""

    def __init__(self, vocab_size: int, sot_len: int, eot: int):
        super().__init__()
        self.vocab_size = vocab_size
        self.sot_len = sot_len
        self.eot = eot

    def forward(
        self,
        tokens: torch.Tensor,
        self_k: torch.Tensor,
        self_v: torch.Tensor,
        cross_k: torch.Tensor,
        cross_v: torch.Tensor,
        offset: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        n = tokens.shape[1]
        start = int(offset[0])
        k = self_k.clone()
        v = self_v.clone()
        k[:, 0, start : start + n, 0] = tokens[0].float()
        v[:, 0, start : start + n, 0] = tokens[0].float()

        column = cross_k[0, 0, :, 0]
        script = column[column > 0].round().long()
        generated = start + n - self.sot_len
        next_token = self.eot
        if generated < script.shape[0]:
            next_token = int(script[generated])

        logits = torch.full([1, n, self.vocab_size], -5.0)
        logits[0, n - 1, next_token] = 5.0
        return logits, k, v


def save(module: torch.nn.Module, path, meta: dict) -> str:
    torch.jit.save(torch.jit.script(module), str(path), _extra_files={"meta.json": json.dumps(meta)})
    return str(path)


@pytest.fixture
def tokens(tmp_path):
    path = tmp_path / "tokens.txt"
    path.write_text("".join(f"▁t{i} {i}\n" if i else "<blk> 0\n" for i in range(VOCAB_SIZE)), encoding="utf-8")
    return str(path)


class TestTorchCtcModel:
    """Tests for loading and running CTC TorchScript models."""

    def test_offline_recognizer(self, tmp_path, tokens):
        """An offline model decodes through the full recognizer."""
        model = save(TinyCtc(VOCAB_SIZE), tmp_path / "ctc.pt", {"vocab_size": VOCAB_SIZE, "subsampling_factor": 1})
        config = RecognizerConfig(model_config=ModelConfig(ctc=CtcModelConfig(model=model), tokens=tokens))
        recognizer = Recognizer.from_config(config)
        assert not recognizer.streaming

        stream = recognizer.create_stream()
        stream.accept_features(script_features([1, 1, 0, 2, 0, 3]))
        stream.input_finished()
        recognizer.decode_stream(stream)
        result = recognizer.get_result(stream)
        assert result.text == "t1 t2 t3"
        assert result.timestamps == (0.0, 0.03, 0.05)

    def test_streaming_states(self, tmp_path, tokens):
        """Streaming models carry their exported states between windows."""
        path = save(
            TinyStreamingCtc(VOCAB_SIZE, 4),
            tmp_path / "ctc.pt",
            {
                "vocab_size": VOCAB_SIZE,
                "streaming": True,
                "window_size": 8,
                "window_shift": 4,
                "subsampling_factor": 1,
            },
        )
        model = TorchCtcModel(path)
        assert model.streaming
        states = model.stack_states([model.get_init_states(), model.get_init_states()])
        assert states[0].shape == (2,)

        config = RecognizerConfig(model_config=ModelConfig(ctc=CtcModelConfig(model=path), tokens=tokens))
        recognizer = Recognizer.from_config(config)
        a, b = recognizer.create_stream(), recognizer.create_stream()
        a.accept_features(script_features([1, 0, 0, 0, 2, 0, 0, 0, 0, 0, 0, 0]))
        b.accept_features(script_features([0, 3, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0]))
        recognizer.decode_streams([a, b])
        recognizer.decode_streams([a, b])

        assert recognizer.get_result(a).text == "t1 t2"
        assert recognizer.get_result(b).text == "t3"
        assert int(a.decode_state.encoder_states[0][0]) == 2

    def test_missing_metadata(self, tmp_path, tokens):
        """Models without required metadata are rejected."""
        model = save(TinyCtc(VOCAB_SIZE), tmp_path / "ctc.pt", {"subsampling_factor": 1})
        with pytest.raises(ConfigError, match="vocab_size"):
            load_model(ModelConfig(ctc=CtcModelConfig(model=model), tokens=tokens))

    def test_missing_file(self, tmp_path, tokens):
        """Missing model files are a configuration error."""
        config = RecognizerConfig(
            model_config=ModelConfig(ctc=CtcModelConfig(model=str(tmp_path / "none.pt")), tokens=tokens)
        )
        with pytest.raises(ConfigError):
            Recognizer.from_config(config)

    def test_not_torchscript(self, tmp_path, tokens):
        """Files that are not TorchScript archives are rejected."""
        path = tmp_path / "ctc.pt"
        path.write_bytes(b"not a model")
        with pytest.raises(ConfigError):
            load_model(ModelConfig(ctc=CtcModelConfig(model=str(path)), tokens=tokens))


class TestTorchTransducerModel:
    """Tests for the encoder / decoder / joiner triple."""

    @pytest.fixture
    def config(self, tmp_path, tokens):
        transducer = TransducerModelConfig(
            encoder=save(TinyTransducerEncoder(), tmp_path / "encoder.pt", {"subsampling_factor": 1}),
            decoder=save(TinyTransducerDecoder(), tmp_path / "decoder.pt", {"context_size": 2}),
            joiner=save(TinyJoiner(VOCAB_SIZE), tmp_path / "joiner.pt", {"vocab_size": VOCAB_SIZE}),
        )
        return ModelConfig(transducer=transducer, tokens=tokens)

    def test_metadata(self, config):
        """Context size comes from the decoder, vocabulary from the joiner."""
        model = load_model(config)
        assert model.context_size == 2
        assert model.vocab_size == VOCAB_SIZE
        assert model.blank_id == 0
        assert not model.streaming

    def test_output_shapes(self, config):
        """Decoder and joiner outputs are flattened to one row per input."""
        model = load_model(config)
        decoder_out = model.run_decoder(np.array([[0, 3], [1, 2]], dtype=np.int64))
        assert decoder_out.shape == (2, 2)
        np.testing.assert_array_equal(decoder_out[1], [1.0, 2.0])

        logits = model.run_joiner(np.array([[3.0], [0.0]], dtype=np.float32), decoder_out)
        assert logits.shape == (2, VOCAB_SIZE)
        assert logits.argmax(axis=-1).tolist() == [3, 0]

    @pytest.mark.parametrize("method", ["greedy_search", "modified_beam_search"])
    def test_offline_recognizer(self, config, method):
        """Both search methods decode through the full recognizer."""
        recognizer = Recognizer.from_config(RecognizerConfig(model_config=config, decoding_method=method))
        stream = recognizer.create_stream()
        stream.accept_features(script_features([1, 0, 2, 0, 3]))
        stream.input_finished()
        recognizer.decode_stream(stream)

        result = recognizer.get_result(stream)
        assert result.text == "t1 t2 t3"
        assert result.timestamps == (0.0, 0.02, 0.04)

    def test_missing_context_size(self, config):
        """The decoder must declare its context size."""
        save(TinyTransducerDecoder(), config.transducer.decoder, {})
        with pytest.raises(ConfigError, match="context_size"):
            load_model(config)


class TestTorchParaformerModel:
    """Tests for the non-autoregressive Paraformer backend."""

    def test_batch_stops_at_eos(self, tmp_path, tokens):
        """Each row drops blanks and ends at its own end-of-sentence."""
        path = save(TinyParaformer(VOCAB_SIZE), tmp_path / "paraformer.pt", {"vocab_size": VOCAB_SIZE, "eos_id": 5})
        config = RecognizerConfig(
            model_config=ModelConfig(paraformer=ParaformerModelConfig(model=path), tokens=tokens)
        )
        recognizer = Recognizer.from_config(config)
        assert recognizer.strategy.subsampling_factor == 6

        a, b = recognizer.create_stream(), recognizer.create_stream()
        a.accept_features(script_features([1, 1, 0, 2, 5, 3]))
        b.accept_features(script_features([4]))
        for stream in (a, b):
            stream.input_finished()
        recognizer.decode_streams([a, b])

        assert recognizer.get_result(a).text == "t1 t1 t2"
        assert recognizer.get_result(b).text == "t4"
        assert recognizer.get_result(a).timestamps == ()


WHISPER_PIECES = {1: " one", 2: " two", 3: " three", 4: "<|startoftranscript|>", 5: "<|endoftext|>"}


@pytest.fixture
def whisper_tokens(tmp_path):
    path = tmp_path / "whisper-tokens.txt"
    lines = [f"{base64.b64encode(p.encode()).decode()} {i}\n" for i, p in WHISPER_PIECES.items()]
    path.write_text("".join(lines), encoding="utf-8")
    return str(path)


class TestTorchWhisperModel:
    """Tests for the Whisper encoder / decoder pair."""

    N_AUDIO_FRAMES = 10

    @pytest.fixture
    def config(self, tmp_path, whisper_tokens):
        meta = {
            "n_text_layer": 1,
            "n_text_ctx": 8,
            "n_text_state": 2,
            "eot": 5,
            "sot_sequence": ["4"],
            "n_audio_frames": self.N_AUDIO_FRAMES,
        }
        whisper = WhisperModelConfig(
            encoder=save(TinyWhisperEncoder(1, 2), tmp_path / "encoder.pt", meta),
            decoder=save(TinyWhisperDecoder(VOCAB_SIZE, 1, 5), tmp_path / "decoder.pt", {}),
        )
        return ModelConfig(whisper=whisper, tokens=whisper_tokens)

    def test_metadata(self, config):
        """Prompt tokens are read as integers."""
        model = load_model(config)
        assert model.sot_sequence == (4,)
        assert model.eot == 5
        assert model.n_text_ctx == 8

    def test_encoder_pads_to_fixed_length(self, config):
        """Short input is padded to the encoder's frame count."""
        model = load_model(config)
        cross_k, cross_v = model.forward_encoder(script_features([1, 2])[np.newaxis])
        assert cross_k.shape == (1, 1, self.N_AUDIO_FRAMES, 2)
        assert cross_k[0, 0, :3, 0].tolist() == [1.0, 2.0, 0.0]

    def test_decoder_writes_at_offset(self, config):
        """The offset selects the cache position the new tokens go to."""
        model = load_model(config)
        cross_k, cross_v = model.forward_encoder(script_features([3])[np.newaxis])
        cache = np.zeros((1, 1, 8, 2), dtype=np.float32)
        logits, k, _ = model.forward_decoder(
            np.array([[4]], dtype=np.int64), cache, cache, cross_k, cross_v, 2
        )
        assert logits.shape == (1, 1, VOCAB_SIZE)
        assert k[0, 0, :, 0].tolist() == [0, 0, 4, 0, 0, 0, 0, 0]

    def test_recognizer(self, config):
        """Base64 token pieces are joined into text."""
        recognizer = Recognizer.from_config(RecognizerConfig(model_config=config))
        stream = recognizer.create_stream()
        stream.accept_features(script_features([1, 0, 2, 0, 3]))
        stream.input_finished()
        recognizer.decode_stream(stream)

        result = recognizer.get_result(stream)
        assert result.text == "one two three"
        assert result.timestamps == ()

    def test_long_input_truncation_is_logged(self, config, caplog):
        """Input past the encoder's frame count is dropped with a warning."""
        recognizer = Recognizer.from_config(RecognizerConfig(model_config=config))
        stream = recognizer.create_stream()
        stream.accept_features(script_features([1, 2] + [0] * 9 + [3]))
        stream.input_finished()
        with caplog.at_level(logging.WARNING, logger="streamasr.engine.torchscript"):
            recognizer.decode_stream(stream)

        assert recognizer.get_result(stream).text == "one two"
        assert "12 frames" in caplog.text
        assert "the last 2 frames are dropped" in caplog.text

    def test_empty_sot_sequence(self, config):
        """Models must declare a start-of-transcript prompt."""
        meta = {"n_text_layer": 1, "n_text_ctx": 8, "n_text_state": 2, "eot": 5, "sot_sequence": []}
        save(TinyWhisperEncoder(1, 2), config.whisper.encoder, meta)
        with pytest.raises(ConfigError, match="sot_sequence"):
            load_model(config)


class TestLoadModel:
    """Tests for process settings applied while loading."""

    def test_num_threads_set_only_when_changed(self, tmp_path, tokens, monkeypatch):
        """Torch threads are only changed when the config asks for a different count."""
        calls = []
        monkeypatch.setattr(torch, "set_num_threads", calls.append)
        path = save(TinyCtc(VOCAB_SIZE), tmp_path / "ctc.pt", {"vocab_size": VOCAB_SIZE, "subsampling_factor": 1})

        current = torch.get_num_threads()
        load_model(ModelConfig(ctc=CtcModelConfig(model=path), tokens=tokens, num_threads=current))
        assert calls == []

        load_model(ModelConfig(ctc=CtcModelConfig(model=path), tokens=tokens, num_threads=current + 1))
        assert calls == [current + 1]
