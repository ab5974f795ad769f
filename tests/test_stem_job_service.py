import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from stemflow.core.errors import DispatchError, NotFoundError, SeparationConfigError
from stemflow.models import StemJob
from stemflow.repos.stem_job_repo import StemJobRepo
from stemflow.schemas.stem_job import JobStatus, StemStage
from stemflow.separation.client import AudioUpload, PollResult, PollStatus
from stemflow.services.stem_job_service import StemJobService

MAX_ADVANCES = 30


@pytest.fixture
def service(db, fake_client, storage):
    return StemJobService(db, client=fake_client, storage=storage)


async def _run_to_end(service, state):
    seen = [state]
    for _ in range(MAX_ADVANCES):
        if state.is_terminal:
            break
        state = await service.advance(user_id=state.user_id, job_id=state.job_id)
        seen.append(state)
    return state, seen


@pytest.mark.asyncio
async def test_create_dispatches_ensemble_from_uploaded_bytes(service, fake_client, storage, seed_input_asset):
    asset_id = await seed_input_asset(storage, data=b"RIFF my singing")

    state = await service.create_job(user_id="user-1", input_asset_id=asset_id, voice_profile_id="vp-1")

    assert state.status is JobStatus.running
    assert state.stage is StemStage.ensemble_wait
    assert state.hashes.ensemble == "ensemble-0"
    assert state.progress == 8
    assert state.voice_profile_id == "vp-1"
    [(source, mode)] = fake_client.dispatches
    assert mode == "ensemble"
    assert isinstance(source, AudioUpload)
    assert source.data == b"RIFF my singing"
    assert source.file_name == "my-song.wav"


@pytest.mark.asyncio
async def test_create_rejects_unknown_or_foreign_input(service, fake_client, storage, seed_input_asset):
    with pytest.raises(NotFoundError) as exc:
        await service.create_job(user_id="user-1", input_asset_id=uuid.uuid4())
    assert exc.value.user_message == "Singing record not found."

    foreign = await seed_input_asset(storage, user_id="someone-else")
    with pytest.raises(NotFoundError):
        await service.create_job(user_id="user-1", input_asset_id=foreign)
    assert fake_client.dispatches == []


@pytest.mark.asyncio
async def test_full_run_dispatches_each_sub_job_once(service, fake_client, storage, seed_input_asset):
    asset_id = await seed_input_asset(storage)
    created = await service.create_job(user_id="user-1", input_asset_id=asset_id)

    final, seen = await _run_to_end(service, created)

    assert final.status is JobStatus.succeeded
    assert final.stage is StemStage.done
    assert final.progress == 100
    assert final.message == "Stem separation completed."
    assert final.error_message is None
    assert final.outputs.complete
    assert fake_client.dispatched_modes() == [
        "ensemble",
        "lead_back",
        "dereverb",
        "dereverb",
        "denoise",
        "denoise",
    ]
    assert len(fake_client.downloads) == 3
    # create + 11 advances: 2 stage transitions, 3 per vocal pass, 3 materializations
    assert len(seen) == 12

    progresses = [s.progress for s in seen]
    assert progresses == sorted(progresses)
    stage_ranks = [s.stage.rank for s in seen]
    assert stage_ranks == sorted(stage_ranks)
    assert [s.version for s in seen] == list(range(2, 2 + len(seen)))


@pytest.mark.asyncio
async def test_full_run_chains_provider_urls(service, fake_client, storage, seed_input_asset):
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))
    final, _ = await _run_to_end(service, created)

    sources = [source for source, _ in fake_client.dispatches[1:]]
    assert sources == [
        "https://files.example/ensemble-0/song_vocals.wav",
        "https://files.example/lead_back-0/song_lead_vocals.wav",
        "https://files.example/lead_back-0/song_back_vocals.wav",
        "https://files.example/dereverb-0/vocals_noreverb.wav",
        "https://files.example/dereverb-1/vocals_noreverb.wav",
    ]
    assert final.urls.instrumental == "https://files.example/ensemble-0/song_instrumental.wav"
    assert final.urls.raw_main_vocal == "https://files.example/denoise-0/vocals_dry.wav"
    assert final.urls.raw_back_vocal == "https://files.example/denoise-1/vocals_dry.wav"

    job_dir = storage.abs_path(f"stems/user-1/{final.job_id}")
    assert sorted(p.name for p in job_dir.iterdir()) == [
        "instrumental.wav",
        "raw-back-vocal.wav",
        "raw-main-vocal.wav",
    ]


@pytest.mark.asyncio
async def test_waiting_replay_never_redispatches(service, fake_client, storage, seed_input_asset):
    fake_client.default_status = PollStatus.waiting
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    first = await service.advance(user_id="user-1", job_id=created.job_id)
    second = await service.advance(user_id="user-1", job_id=created.job_id)

    assert len(fake_client.dispatches) == 1
    assert fake_client.polls == ["ensemble-0", "ensemble-0"]
    assert second.stage is StemStage.ensemble_wait
    assert second.hashes == created.hashes
    assert created.progress <= first.progress <= second.progress == 16


@pytest.mark.asyncio
async def test_waiting_keeps_provider_message(service, fake_client, storage, seed_input_asset):
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))
    fake_client.statuses["ensemble-0"] = PollResult(status=PollStatus.waiting, message="Queue position 4")

    state = await service.advance(user_id="user-1", job_id=created.job_id)

    assert state.message == "Queue position 4"


@pytest.mark.asyncio
async def test_terminal_job_is_left_alone(service, fake_client, storage, seed_input_asset):
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))
    final, _ = await _run_to_end(service, created)
    calls = (len(fake_client.dispatches), len(fake_client.polls), len(fake_client.downloads))

    again = await service.advance(user_id="user-1", job_id=final.job_id)

    assert again == final
    assert (len(fake_client.dispatches), len(fake_client.polls), len(fake_client.downloads)) == calls


@pytest.mark.asyncio
async def test_upstream_not_found_fails_the_job(service, fake_client, storage, seed_input_asset):
    fake_client.statuses["ensemble-0"] = PollResult(status=PollStatus.not_found)
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    state = await service.advance(user_id="user-1", job_id=created.job_id)

    assert state.status is JobStatus.failed
    assert state.stage is StemStage.done
    assert state.progress >= 1
    assert "main vocal separation" in state.error_message
    assert len(fake_client.dispatches) == 1


@pytest.mark.asyncio
async def test_upstream_failure_message_is_surfaced(service, fake_client, storage, seed_input_asset):
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))
    fake_client.statuses["ensemble-0"] = PollResult(status=PollStatus.failed, message="Audio too short")

    state = await service.advance(user_id="user-1", job_id=created.job_id)

    assert state.status is JobStatus.failed
    assert "Audio too short" in state.error_message


@pytest.mark.asyncio
async def test_poll_error_leaves_state_untouched(service, fake_client, storage, seed_input_asset, poll_error):
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))
    fake_client.statuses["ensemble-0"] = poll_error

    state = await service.advance(user_id="user-1", job_id=created.job_id)
    assert state == created

    # lease was released, so the next advance goes through
    del fake_client.statuses["ensemble-0"]
    state = await service.advance(user_id="user-1", job_id=created.job_id)
    assert state.stage is StemStage.leadback_wait
    assert state.version == created.version + 1


@pytest.mark.asyncio
async def test_unclassifiable_lead_back_output_fails(service, fake_client, storage, seed_input_asset):
    fake_client.outputs["lead_back"] = ["drums.wav", "vocals_lead.wav"]
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    final, _ = await _run_to_end(service, created)

    assert final.status is JobStatus.failed
    assert "back vocal" in final.error_message
    assert fake_client.dispatched_modes() == ["ensemble", "lead_back"]


@pytest.mark.asyncio
async def test_missing_instrumental_fails(service, fake_client, storage, seed_input_asset):
    fake_client.outputs["ensemble"] = ["only_vocals.wav"]
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    state = await service.advance(user_id="user-1", job_id=created.job_id)

    assert state.status is JobStatus.failed
    assert "only_vocals.wav" in state.error_message
    assert fake_client.dispatched_modes() == ["ensemble"]


@pytest.mark.asyncio
async def test_dispatch_rejection_fails_on_create(service, fake_client, storage, seed_input_asset):
    fake_client.dispatch_error = DispatchError("create failed", user_message="File is too long.")

    state = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    assert state.status is JobStatus.failed
    assert state.error_message == "File is too long."
    assert state.hashes.ensemble is None


@pytest.mark.asyncio
async def test_download_failure_fails_with_save_message(service, fake_client, storage, seed_input_asset):
    fake_client.failing_downloads.add("https://files.example/denoise-1/vocals_dry.wav")
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    final, _ = await _run_to_end(service, created)

    assert final.status is JobStatus.failed
    assert final.error_message == "Could not save the back vocal stem to your library. Please try again."
    assert final.outputs.raw_main_vocal_asset_id is not None
    assert final.outputs.raw_back_vocal_asset_id is None


@pytest.mark.asyncio
async def test_concurrent_advance_does_not_dispatch(service, fake_client, storage, seed_input_asset, session_factory):
    fake_client.default_status = PollStatus.waiting
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    async with session_factory() as other:
        async with other.begin():
            assert await StemJobRepo(other).claim_lease(
                created.job_id, expected_version=created.version, token="other-worker", ttl_seconds=60
            )

    state = await service.advance(user_id="user-1", job_id=created.job_id)

    assert state == created
    assert fake_client.polls == []
    assert len(fake_client.dispatches) == 1


@pytest.mark.asyncio
async def test_other_users_cannot_see_or_advance(service, storage, seed_input_asset):
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    with pytest.raises(NotFoundError):
        await service.get_job(user_id="user-2", job_id=created.job_id)
    with pytest.raises(NotFoundError):
        await service.advance(user_id="user-2", job_id=created.job_id)
    with pytest.raises(NotFoundError):
        await service.list_history(user_id="user-2", job_id=created.job_id)


@pytest.mark.asyncio
async def test_history_records_every_version(service, storage, seed_input_asset):
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))
    await service.advance(user_id="user-1", job_id=created.job_id)

    history = await service.list_history(user_id="user-1", job_id=created.job_id)

    assert [s.version for s in history] == [1, 2, 3]
    assert [s.status for s in history] == [JobStatus.queued, JobStatus.running, JobStatus.running]
    assert history[-1].stage is StemStage.leadback_wait


@pytest.mark.asyncio
async def test_expire_if_stale(service, fake_client, storage, seed_input_asset):
    fake_client.default_status = PollStatus.waiting
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    fresh = await service.expire_if_stale(user_id="user-1", job_id=created.job_id, max_age_seconds=3600)
    assert fresh == created

    expired = await service.expire_if_stale(
        user_id="user-1",
        job_id=created.job_id,
        max_age_seconds=3600,
        now=created.updated_at + timedelta(hours=2),
    )
    assert expired.status is JobStatus.failed
    assert expired.stage is StemStage.done
    assert "timed out" in expired.error_message
    assert expired.version == created.version + 1


@pytest.mark.asyncio
async def test_unconfigured_provider_creates_no_job(service, fake_client, storage, seed_input_asset, session_factory):
    fake_client.config_error = SeparationConfigError()

    with pytest.raises(SeparationConfigError):
        await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(StemJob))
    assert count == 0
    assert fake_client.dispatches == []


async def _advance_n(service, state, n):
    for _ in range(n):
        state = await service.advance(user_id=state.user_id, job_id=state.job_id)
    return state


# hash the provider gives up on -> (text in error_message, dispatches made before it)
LATER_STAGE_FAILURES = [
    ("lead_back-0", "lead/back vocal separation", 2),
    ("dereverb-0", "lead vocal de-reverb", 3),
    ("dereverb-1", "back vocal de-reverb", 4),
    ("denoise-0", "lead vocal denoise", 5),
    ("denoise-1", "back vocal denoise", 6),
]


@pytest.mark.asyncio
@pytest.mark.parametrize("poll_status", [PollStatus.not_found, PollStatus.failed])
@pytest.mark.parametrize("job_hash, where, dispatched", LATER_STAGE_FAILURES)
async def test_later_stage_upstream_failure_fails_the_job(
    service, fake_client, storage, seed_input_asset, job_hash, where, dispatched, poll_status
):
    fake_client.statuses[job_hash] = PollResult(status=poll_status, message="Bad audio")
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    final, seen = await _run_to_end(service, created)

    assert final.status is JobStatus.failed
    assert final.stage is StemStage.done
    assert where in final.error_message
    assert "Bad audio" in final.error_message
    assert len(fake_client.dispatches) == dispatched
    assert fake_client.downloads == []
    assert [s.progress for s in seen] == sorted(s.progress for s in seen)


# hash still processing -> (stage the job parks in, progress milestone, dispatches made)
LATER_STAGE_WAITS = [
    ("lead_back-0", StemStage.leadback_wait, 44, 2),
    ("dereverb-0", StemStage.dereverb_wait, 64, 3),
    ("dereverb-1", StemStage.dereverb_wait, 74, 4),
    ("denoise-0", StemStage.denoise_wait, 86, 5),
    ("denoise-1", StemStage.denoise_wait, 92, 6),
]


@pytest.mark.asyncio
@pytest.mark.parametrize("job_hash, stage, progress, dispatched", LATER_STAGE_WAITS)
async def test_later_stage_waiting_parks_without_redispatch(
    service, fake_client, storage, seed_input_asset, job_hash, stage, progress, dispatched
):
    fake_client.statuses[job_hash] = PollStatus.waiting
    created = await service.create_job(user_id="user-1", input_asset_id=await seed_input_asset(storage))

    parked = await _advance_n(service, created, 12)
    again = await service.advance(user_id="user-1", job_id=created.job_id)

    assert again.status is JobStatus.running
    assert again.stage is stage
    assert again.progress == progress
    assert again.hashes == parked.hashes
    assert len(fake_client.dispatches) == dispatched
    assert fake_client.polls.count(job_hash) >= 2

    # once the provider finishes, the job carries on to success
    del fake_client.statuses[job_hash]
    final, _ = await _run_to_end(service, again)
    assert final.status is JobStatus.succeeded
    assert len(fake_client.dispatches) == 6
