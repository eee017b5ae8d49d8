from __future__ import annotations

import asyncio

import numpy as np
import pytest

from conftest import FakeCamera, FakeDetector, make_flat_image, make_noise_image
from faceauth.exceptions import CaptureError
from faceauth.services.enrollment_service import EnrollmentSession, StageResult, run_stages
from faceauth.services.face_detection_service import (
    DetectionIndeterminate,
    FaceAngle,
    FaceFound,
    FaceNotFound,
    face_angle,
    validate_face,
)

BOX = (10.0, 10.0, 300.0, 300.0)


def _face(yaw: float = 0.0) -> FaceFound:
    return FaceFound(bbox=BOX, yaw=yaw, roll=0.0, left_eye_open=0.9, right_eye_open=0.9)


def _session(biometric, frames, detections, **kwargs) -> EnrollmentSession:
    return EnrollmentSession("alice", FakeCamera(frames), FakeDetector(detections), biometric, **kwargs)


def test_guided_enrollment_stores_template(biometric, template_store):
    frames = [make_noise_image(seed) for seed in range(5)]
    detections = [_face(0)]
    session = _session(biometric, frames, detections)

    async def scenario():
        steps = [await session.capture_step() for _ in range(5)]
        done = await session.complete()
        return steps, done

    steps, (ok, message, record) = asyncio.run(scenario())

    assert all(step.accepted for step in steps)
    assert [step.captured for step in steps] == [1, 2, 3, 4, 5]
    assert steps[-1].complete
    assert ok, message
    assert record.embedding_count == 5
    assert asyncio.run(template_store.is_enrolled("alice"))
    embeddings = asyncio.run(template_store.get_embeddings("alice"))
    assert [np.linalg.norm(e) for e in embeddings] == pytest.approx([1.0] * 5)


def test_dark_frame_is_rejected_without_losing_progress(biometric):
    frames = [make_noise_image(0), make_flat_image(20)]
    session = _session(biometric, frames, [_face()])

    async def scenario():
        return await session.capture_step(), await session.capture_step()

    first, second = asyncio.run(scenario())

    assert first.accepted
    assert not second.accepted
    assert "sombre" in second.message
    assert second.captured == 1


def test_blurry_frame_is_rejected(biometric):
    session = _session(biometric, [make_flat_image(120)], [_face()])
    step = asyncio.run(session.capture_step())
    assert not step.accepted
    assert "floue" in step.message


def test_no_face(biometric):
    session = _session(biometric, [make_noise_image(0)], [FaceNotFound()])
    step = asyncio.run(session.capture_step())
    assert not step.accepted
    assert step.message == FaceNotFound().message


def test_indeterminate_detection(biometric):
    session = _session(biometric, [make_noise_image(0)], [DetectionIndeterminate("offline")])
    step = asyncio.run(session.capture_step())
    assert not step.accepted
    assert "offline" in step.message


def test_head_turned_too_far(biometric):
    session = _session(biometric, [make_noise_image(0)], [_face(yaw=30)])
    step = asyncio.run(session.capture_step())
    assert not step.accepted
    assert "Tournez" in step.message


def test_face_too_small(biometric):
    small = FaceFound(bbox=(0, 0, 100, 100))
    session = _session(biometric, [make_noise_image(0)], [small])
    step = asyncio.run(session.capture_step())
    assert not step.accepted
    assert "trop petit" in step.message


def test_camera_failure(biometric):
    session = _session(biometric, [CaptureError("no device")], [_face()])
    step = asyncio.run(session.capture_step())
    assert not step.accepted
    assert "no device" in step.message
    assert step.captured == 0


def test_complete_requires_all_captures(biometric, template_store):
    session = _session(biometric, [make_noise_image(0)], [_face()])

    async def scenario():
        await session.capture_step()
        return await session.complete()

    ok, message, record = asyncio.run(scenario())
    assert not ok
    assert record is None
    assert message.startswith("4 ")
    assert not asyncio.run(template_store.is_enrolled("alice"))


def test_instructions_follow_angles(biometric):
    session = _session(biometric, [], [_face()])
    assert "droit" in session.next_instruction()

    session.captured_angles.add(FaceAngle.CENTER)
    assert "gauche" in session.next_instruction()
    session.captured_angles.add(FaceAngle.LEFT)
    assert "droite" in session.next_instruction()
    session.captured_angles.add(FaceAngle.RIGHT)
    assert session.next_instruction().startswith("Parfait")


def test_face_validation_and_angle():
    assert validate_face(FaceFound()) == (True, None)
    assert validate_face(FaceFound(roll=20))[0] is False
    assert validate_face(FaceFound(left_eye_open=0.2, right_eye_open=0.9))[1] == "Veuillez ouvrir les deux yeux."
    assert face_angle(FaceFound(yaw=25)) == FaceAngle.LEFT
    assert face_angle(FaceFound(yaw=-25)) == FaceAngle.RIGHT
    assert face_angle(FaceFound(yaw=10)) == FaceAngle.CENTER
    assert face_angle(FaceFound()) == FaceAngle.CENTER


def test_stage_chain_stops_at_first_failure():
    seen = []

    async def double(value):
        seen.append("double")
        return StageResult(ok=True, value=value * 2)

    async def reject(value):
        seen.append("reject")
        return StageResult(ok=False, message=f"rejected {value}")

    async def never(value):
        seen.append("never")
        return StageResult(ok=True, value=value)

    result = asyncio.run(run_stages(3, [double, reject, never]))
    assert not result.ok
    assert result.message == "rejected 6"
    assert seen == ["double", "reject"]
