"""
Tests for Data Persistence and Configuration
============================================
"""

import csv
import json

import numpy as np
import pytest
from pydantic import ValidationError

from conjoint.errors import ChoiceDataError, ConfigurationError
from conjoint.io import (
    estimands_to_csv,
    load_covariance,
    load_draws,
    load_estimands,
    load_observations,
    parameter_label,
    save_estimands,
    validate_observations,
)
from conjoint.models import INTERCEPT, ChoiceTask, Estimand, EstimandKind, Observation, StudyConfig


def _write_observations(path, observations, attributes):
    names = [a.name for a in attributes]
    with path.open("w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["respondent_id", "task_id", "alternative_id", *names, "chosen"])
        for o in observations:
            writer.writerow([o.respondent_id, o.task_id, o.alternative_id, *(o.levels[n] for n in names), int(o.chosen)])


def _write_rows(path, header, rows):
    with path.open("w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        writer.writerows(rows)


@pytest.fixture
def estimands():
    return [
        Estimand(kind=EstimandKind.MARGINAL_MEAN, attribute="price", level="$2", estimate=0.61,
                 lower=0.55, upper=0.67, conf_level=0.95, n_draws=500),
        Estimand(kind=EstimandKind.AMCE, attribute="price", level="$2", reference_level="$2",
                 estimate=0.0, n_draws=500),
        Estimand(kind=EstimandKind.IMPORTANCE, attribute="flavor", respondent_id="r1", estimate=0.25),
    ]


@pytest.mark.unit
class TestObservations:
    """Reading and validating observed choice data."""

    def test_round_trip(self, tmp_path, candy_attributes, observations):
        path = tmp_path / "obs.csv"
        _write_observations(path, observations, candy_attributes)
        loaded = load_observations(path, candy_attributes)
        assert loaded == observations

    def test_missing_column(self, tmp_path, candy_attributes):
        path = tmp_path / "obs.csv"
        _write_rows(path, ["respondent_id", "task_id", "alternative_id", "price", "chosen"], [])
        with pytest.raises(ChoiceDataError, match="packaging"):
            load_observations(path, candy_attributes)

    def test_unreadable_chosen_flag(self, tmp_path, candy_attributes):
        path = tmp_path / "obs.csv"
        header = ["respondent_id", "task_id", "alternative_id", "price", "packaging", "flavor", "chosen"]
        _write_rows(path, header, [["r1", "t1", "1", "$2", "paper", "nuts", "maybe"]])
        with pytest.raises(ChoiceDataError, match="maybe"):
            load_observations(path, candy_attributes)

    def test_undeclared_level(self, candy_attributes, observations):
        bad = observations[0].model_copy(update={"levels": {**observations[0].levels, "flavor": "caramel"}})
        with pytest.raises(ChoiceDataError, match="caramel"):
            validate_observations([bad, *observations[1:]], candy_attributes)

    def test_two_chosen_in_one_task(self, candy_attributes, observations):
        both = [o.model_copy(update={"chosen": True}) for o in observations[:2]]
        with pytest.raises(ChoiceDataError, match="2 chosen"):
            validate_observations(both + observations[2:], candy_attributes)

    def test_single_alternative_task(self, candy_attributes):
        lone = Observation(
            respondent_id="r1", task_id="t1", alternative_id="1",
            levels={"price": "$2", "packaging": "paper", "flavor": "nuts"}, chosen=True,
        )
        with pytest.raises(ChoiceDataError, match="single alternative"):
            validate_observations([lone], candy_attributes)

    def test_tasks_in_order_of_appearance(self, candy_attributes, observations):
        tasks = validate_observations(observations, candy_attributes)
        assert len(tasks) == 24
        assert all(isinstance(t, ChoiceTask) for t in tasks)
        first = tasks[0]
        assert (first.respondent_id, first.task_id) == ("r1", "t1")
        assert len(first.alternatives) == 2
        # r1/t1 picks the second alternative
        assert first.chosen_index == 1
        assert first.alternatives[1] == observations[1].alternative
        assert [(t.respondent_id, t.task_id) for t in tasks[3:5]] == [("r1", "t4"), ("r2", "t1")]


@pytest.mark.unit
class TestDraws:
    """Reading long-format utility draws."""

    def test_population_draws_with_intercept(self, tmp_path):
        path = tmp_path / "draws.csv"
        _write_rows(path, ["chain", "draw", "attribute", "level", "value"], [
            [1, 0, INTERCEPT, "", 0.3],
            [1, 0, "price", "$3", -0.5],
            [1, 0, "price", "$4", -1.0],
            [1, 1, "price", "$3", -0.4],
            [1, 1, "price", "$4", -0.9],
        ])
        draws = load_draws(path)
        assert len(draws) == 2
        assert draws[0].intercept == 0.3
        assert draws[0].key == (1, 0)
        assert draws[1].values == {"price": {"$3": -0.4, "$4": -0.9}}
        assert draws[1].intercept == 0.0
        assert draws[0].respondent_id is None

    def test_respondent_draws(self, tmp_path):
        path = tmp_path / "ind.csv"
        _write_rows(path, ["respondent_id", "draw", "attribute", "level", "value"], [
            ["r1", 0, "flavor", "nuts", 0.2],
            ["r2", 0, "flavor", "nuts", -0.1],
            ["r1", 1, "flavor", "nuts", 0.3],
        ])
        draws = load_draws(path)
        assert [(d.respondent_id, d.draw) for d in draws] == [("r1", 0), ("r2", 0), ("r1", 1)]
        assert all(d.chain is None for d in draws)

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "draws.csv"
        _write_rows(path, ["draw", "attribute", "value"], [[0, "price", 1.0]])
        with pytest.raises(ConfigurationError, match="level"):
            load_draws(path)

    def test_bad_number(self, tmp_path):
        path = tmp_path / "draws.csv"
        _write_rows(path, ["draw", "attribute", "level", "value"], [[0, "price", "$3", "lots"]])
        with pytest.raises(ConfigurationError, match="line"):
            load_draws(path)


@pytest.mark.unit
class TestCovariance:
    """Reading labelled coefficient covariance matrices."""

    LABELS = ["price=$3", "price=$4", "packaging=sticker", "flavor=nuts"]

    def _matrix(self, labels):
        # Diagonal tags each parameter; one off-diagonal pair checks reordering
        n = len(labels)
        m = np.zeros((n, n))
        for i, label in enumerate(labels):
            m[i, i] = (self.LABELS.index(label) + 1) / 100 if label in self.LABELS else 0.5
        i, j = labels.index("price=$3"), labels.index("flavor=nuts")
        m[i, j] = m[j, i] = 0.002
        return m

    def _write(self, path, labels, matrix):
        _write_rows(path, ["parameter", *labels], [[label, *row] for label, row in zip(labels, matrix)])

    def test_reordered_to_parameter_index(self, tmp_path, space):
        shuffled = ["flavor=nuts", "price=$4", "packaging=sticker", "price=$3"]
        path = tmp_path / "vcov.csv"
        self._write(path, shuffled, self._matrix(shuffled))
        matrix, include_intercept = load_covariance(path, space)
        assert not include_intercept
        assert np.diag(matrix).tolist() == pytest.approx([0.01, 0.02, 0.03, 0.04])
        assert matrix[0, 3] == matrix[3, 0] == pytest.approx(0.002)
        assert matrix[1, 2] == 0.0

    def test_intercept_detected(self, tmp_path, space):
        labels = [*self.LABELS, INTERCEPT]
        path = tmp_path / "vcov.csv"
        self._write(path, labels, self._matrix(labels))
        matrix, include_intercept = load_covariance(path, space)
        assert include_intercept
        assert matrix.shape == (5, 5)
        assert matrix[0, 0] == pytest.approx(0.5)
        assert [p for p, _ in space.parameter_index(include_intercept=True)][0] == INTERCEPT

    def test_missing_parameter(self, tmp_path, space):
        labels = self.LABELS[:2] + self.LABELS[3:]
        path = tmp_path / "vcov.csv"
        self._write(path, labels, np.eye(3))
        with pytest.raises(ConfigurationError, match="packaging=sticker"):
            load_covariance(path, space)

    def test_asymmetric(self, tmp_path, space):
        matrix = np.eye(4)
        matrix[0, 1] = 0.3
        path = tmp_path / "vcov.csv"
        self._write(path, self.LABELS, matrix)
        with pytest.raises(ConfigurationError, match="symmetric"):
            load_covariance(path, space)

    def test_row_labels_must_match_columns(self, tmp_path, space):
        path = tmp_path / "vcov.csv"
        _write_rows(path, ["parameter", *self.LABELS], [[label, 1, 0, 0, 0] for label in reversed(self.LABELS)])
        with pytest.raises(ConfigurationError, match="square"):
            load_covariance(path, space)

    def test_parameter_label(self):
        assert parameter_label("price", "$3") == "price=$3"
        assert parameter_label(INTERCEPT, "") == INTERCEPT


@pytest.mark.unit
class TestEstimandOutput:
    """Writing estimand tables."""

    def test_json_round_trip(self, tmp_path, estimands):
        path = tmp_path / "out" / "estimands.json"
        written = save_estimands(estimands, path, study="Candy")
        assert written == path
        payload = json.loads(path.read_text())
        assert payload["study"] == "Candy"
        assert "timestamp" in payload
        assert load_estimands(path) == estimands

    def test_csv_columns(self, tmp_path, estimands):
        path = tmp_path / "estimands.csv"
        save_estimands(estimands, path)
        with path.open(newline="") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 3
        assert rows[0]["kind"] == "marginal_mean"
        assert float(rows[0]["lower"]) == pytest.approx(0.55)
        assert rows[1]["lower"] == ""
        assert rows[2]["respondent_id"] == "r1"

    def test_csv_header(self, estimands):
        assert estimands_to_csv(estimands).splitlines()[0].startswith("kind,attribute,level")

    def test_unsupported_suffix(self, tmp_path, estimands):
        with pytest.raises(ConfigurationError, match=".xlsx"):
            save_estimands(estimands, tmp_path / "out.xlsx")


@pytest.mark.unit
class TestStudyConfig:
    """Loading the YAML study configuration."""

    def test_bundled_candy_config(self, config_path):
        config = StudyConfig.from_yaml(config_path)
        assert [a.name for a in config.attributes] == ["price", "packaging", "flavor"]
        assert config.attributes[0].reference_level == "$2"
        assert config.settings.seed == 1234
        assert config.settings.link == "logit"
        assert len(config.market) == 3

    def test_duplicate_attribute_names(self):
        with pytest.raises(ValidationError, match="unique"):
            StudyConfig.model_validate({
                "name": "dup",
                "attributes": [{"name": "a", "levels": ["x", "y"]}, {"name": "a", "levels": ["z", "w"]}],
            })

    def test_invalid_alpha(self):
        with pytest.raises(ValidationError):
            StudyConfig.model_validate({
                "name": "bad",
                "attributes": [{"name": "a", "levels": ["x", "y"]}],
                "settings": {"alpha": 1.5},
            })

    def test_duplicate_names_in_yaml_file(self, tmp_path):
        path = tmp_path / "dup.yaml"
        path.write_text(
            "name: dup\n"
            "attributes:\n"
            "  - {name: a, levels: [x, y]}\n"
            "  - {name: a, levels: [z, w]}\n"
        )
        with pytest.raises(ConfigurationError, match="unique"):
            StudyConfig.from_yaml(path)

    def test_malformed_yaml_file(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(ConfigurationError, match="not valid YAML"):
            StudyConfig.from_yaml(path)
