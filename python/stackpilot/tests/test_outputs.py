"""Tests for projecting flat outputs onto construct ids."""

import copy

from stackpilot.models.terraform import TerraformJson
from stackpilot.utils.outputs import get_construct_ids_for_outputs

from conftest import DEFINITION, OUTPUTS


def test_outputs_are_keyed_by_construct_path():
    nested = get_construct_ids_for_outputs(DEFINITION, OUTPUTS)
    assert nested == {
        "app": {
            "bucket": {"arn": "arn:aws:s3:::bucket"},
            "queue": {"url": "https://sqs/queue"},
        }
    }


def test_parsed_and_raw_definitions_agree():
    parsed = TerraformJson.model_validate(DEFINITION)
    assert get_construct_ids_for_outputs(parsed, OUTPUTS) == get_construct_ids_for_outputs(
        DEFINITION, OUTPUTS
    )


def test_projection_is_pure():
    definition = copy.deepcopy(DEFINITION)
    outputs = dict(OUTPUTS)

    first = get_construct_ids_for_outputs(definition, outputs)
    second = get_construct_ids_for_outputs(definition, outputs)

    assert first == second
    assert definition == DEFINITION
    assert outputs == OUTPUTS


def test_unattributed_outputs_only_stay_flat():
    outputs = {"removed_output_9Z": "stale"}
    nested = get_construct_ids_for_outputs(DEFINITION, outputs)
    assert nested == {}
    assert outputs == {"removed_output_9Z": "stale"}


def test_missing_outputs_prune_their_subtrees():
    nested = get_construct_ids_for_outputs(DEFINITION, {"queue_url_3C4D": "q"})
    assert nested == {"app": {"queue": {"url": "q"}}}


def test_falsy_values_are_kept():
    nested = get_construct_ids_for_outputs(
        DEFINITION, {"bucket_arn_1A2B": "", "queue_url_3C4D": None}
    )
    assert nested == {"app": {"bucket": {"arn": ""}, "queue": {"url": None}}}


def test_definition_without_metadata():
    assert get_construct_ids_for_outputs({"resource": {}}, OUTPUTS) == {}
    assert get_construct_ids_for_outputs({"//": "oops"}, OUTPUTS) == {}
