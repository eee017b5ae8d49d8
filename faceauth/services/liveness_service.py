"""
Service de vivacité : protocole de vérification en 3 phases

    Phase 1 (yeux ouverts) : capture, le détecteur doit voir les DEUX yeux
        ouverts (probabilité > 0.55). Cette image sert à l'identification.
    Phase 2 (clignement) : compte à rebours de 3 s puis capture automatique,
        au moins un œil doit être FERMÉ (probabilité < 0.35). Une photo ou un
        écran ne peut pas cligner sur commande.
    Phase 3 (identité) : embedding + comparaison cosinus de l'image de la
        phase 1 contre les gabarits chiffrés de l'utilisateur.

Si le détecteur ne fournit pas de probabilité d'ouverture des yeux, la vivacité
est sautée et on passe directement à l'identité (LIVENESS_FAIL_OPEN).
"""
import asyncio
import enum
from typing import Callable, List, Optional

import logging

from faceauth.config import settings
from faceauth.exceptions import CaptureError, DecryptionError, LivenessFailed, NotEnrolledError
from faceauth.schemas.biometric import LivenessOutcome
from faceauth.services.biometric_service import BiometricService
from faceauth.services.camera_service import Camera
from faceauth.services.face_detection_service import (
    DetectionIndeterminate,
    DetectionResult,
    EyeState,
    FaceDetector,
    eye_state,
)

logger = logging.getLogger(__name__)

READY_MESSAGE = "Placez votre visage dans l'ovale, puis appuyez sur Démarrer."


class LivenessPhase(str, enum.Enum):
    READY = "ready"
    CAPTURE_OPEN = "capture_open"
    COUNTING_DOWN = "counting_down"
    CAPTURE_BLINK = "capture_blink"
    VERIFYING = "verifying"
    SUCCESS = "success"
    FAILED = "failed"


class CountdownTimer:
    """
    Compte à rebours périodique annulable (un tick par intervalle)
    cancel() est synchrone et idempotent.
    """

    def __init__(self, seconds: int, interval: float, on_tick: Optional[Callable[[int], None]] = None):
        self.seconds = seconds
        self.interval = interval
        self.on_tick = on_tick
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    def start(self) -> "CountdownTimer":
        self._task = asyncio.get_running_loop().create_task(self._run())
        if self._cancelled:
            self._task.cancel()
        return self

    async def _run(self) -> None:
        remaining = self.seconds
        while remaining > 0:
            await asyncio.sleep(self.interval)
            remaining -= 1
            if self.on_tick is not None:
                self.on_tick(remaining)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> bool:
        """True si le compte à rebours est arrivé à terme, False s'il a été annulé"""
        if self._task is None:
            return False
        try:
            await asyncio.wait({self._task})
        except asyncio.CancelledError:
            self.cancel()
            raise
        return not self._task.cancelled()


class LivenessSession:
    """
    Session transitoire, une par tentative de vérification

    Ready -> CaptureOpen -> CountingDown -> CaptureBlink -> Verifying -> {Success, Failed}
    Failed ne revient à Ready que par reset() explicite.
    """

    def __init__(
        self,
        user_id: str,
        camera: Camera,
        detector: FaceDetector,
        biometric: BiometricService,
        countdown_seconds: int = None,
        tick_seconds: float = None,
        fail_open: bool = None,
        on_change: Optional[Callable[[LivenessPhase, str], None]] = None,
    ):
        self.user_id = user_id
        self.camera = camera
        self.detector = detector
        self.biometric = biometric
        self.countdown_seconds = settings.BLINK_COUNTDOWN_SECONDS if countdown_seconds is None else countdown_seconds
        self.tick_seconds = settings.COUNTDOWN_TICK_SECONDS if tick_seconds is None else tick_seconds
        self.fail_open = settings.LIVENESS_FAIL_OPEN if fail_open is None else fail_open
        self.on_change = on_change

        self.phase = LivenessPhase.READY
        self.message = READY_MESSAGE
        self.countdown = self.countdown_seconds
        self.identity_image: Optional[bytes] = None
        self.similarity: Optional[float] = None
        self.liveness_skipped = False
        self.left_eye: Optional[float] = None
        self.right_eye: Optional[float] = None
        self.history: List[LivenessPhase] = [LivenessPhase.READY]

        self._timer: Optional[CountdownTimer] = None
        self._generation = 0
        self._closed = False

    # Cycle de vie

    async def start(self) -> LivenessOutcome:
        """Dérouler le protocole complet jusqu'à un état terminal"""
        if self._closed:
            raise RuntimeError("Session fermée")
        if self.phase != LivenessPhase.READY:
            raise RuntimeError(f"Session déjà démarrée (phase {self.phase.value}) ; réinitialisez d'abord")

        generation = self._generation
        try:
            await self._run(generation)
        except (LivenessFailed, CaptureError, NotEnrolledError) as e:
            if not self._is_stale(generation):
                self._record_failure(e)
        except DecryptionError:
            if not self._is_stale(generation):
                self._set_phase(LivenessPhase.FAILED, "Gabarit biométrique illisible ou corrompu.")
            raise
        return self.outcome()

    def reset(self) -> None:
        """
        Retour à Ready : annule le compte à rebours et oublie l'image d'identité.
        Le résultat d'une capture encore en cours sera ignoré.
        """
        self._cancel_timer()
        self._generation += 1
        self.identity_image = None
        self.similarity = None
        self.liveness_skipped = False
        self.left_eye = None
        self.right_eye = None
        self.countdown = self.countdown_seconds
        self._set_phase(LivenessPhase.READY, READY_MESSAGE)

    def close(self) -> None:
        """Libérer la session ; idempotent"""
        self._cancel_timer()
        self._generation += 1
        self.identity_image = None
        self._closed = True

    def outcome(self) -> LivenessOutcome:
        return LivenessOutcome(
            phase=self.phase.value,
            message=self.message,
            similarity=self.similarity,
            liveness_skipped=self.liveness_skipped,
            left_eye=self.left_eye,
            right_eye=self.right_eye,
        )

    # Phases

    async def _run(self, generation: int) -> None:
        # Phase 1 : yeux ouverts
        self._set_phase(LivenessPhase.CAPTURE_OPEN, "Capture - gardez les yeux grands OUVERTS...")
        image = await self.camera.capture()
        if self._is_stale(generation):
            return
        state = eye_state(await self._detect(image))
        if self._is_stale(generation):
            return

        if state is None:
            self._skip_liveness()
            self.identity_image = image
            await self._verify(generation)
            return

        self._remember(state)
        if not state.is_open():
            raise LivenessFailed(
                f"Yeux non détectés comme ouverts (gauche={state.left:.2f}, "
                f"droite={state.right:.2f}). Ouvrez bien les yeux.",
                left=state.left,
                right=state.right,
            )
        self.identity_image = image

        # Phase 2 : compte à rebours puis capture du clignement
        if not await self._countdown(generation):
            return

        self._set_phase(LivenessPhase.CAPTURE_BLINK, "CLIGNEZ DES YEUX MAINTENANT !")
        blink_image = await self.camera.capture()
        if self._is_stale(generation):
            return
        state = eye_state(await self._detect(blink_image))
        if self._is_stale(generation):
            return

        if state is None:
            self._skip_liveness()
        else:
            self._remember(state)
            if not state.is_closed():
                # Yeux toujours ouverts : attaque par photo (ou pas de clignement)
                raise LivenessFailed(
                    f"Clignement non détecté (gauche={state.left:.2f}, droite={state.right:.2f}). "
                    "Clignez naturellement au signal. "
                    "Les attaques par photo ou écran ne sont pas acceptées.",
                    left=state.left,
                    right=state.right,
                )

        # Phase 3 : identité sur l'image yeux ouverts
        await self._verify(generation)

    async def _countdown(self, generation: int) -> bool:
        self.countdown = self.countdown_seconds
        self._set_phase(LivenessPhase.COUNTING_DOWN, f"CLIGNEZ dans {self.countdown}...")
        timer = CountdownTimer(self.countdown_seconds, self.tick_seconds, self._on_tick).start()
        self._timer = timer
        expired = await timer.wait()
        if self._timer is timer:
            self._timer = None
        return expired and not self._is_stale(generation)

    def _on_tick(self, remaining: int) -> None:
        self.countdown = remaining
        if remaining > 0:
            self.message = f"CLIGNEZ dans {remaining}..."
            self._notify()

    async def _verify(self, generation: int) -> None:
        self._set_phase(LivenessPhase.VERIFYING, "Vivacité OK - vérification de l'identité...")
        result = await self.biometric.verify_user(self.user_id, self.identity_image)
        if self._is_stale(generation):
            return
        self.similarity = result.similarity
        if result.verified:
            self._set_phase(LivenessPhase.SUCCESS, result.message)
        else:
            self._set_phase(LivenessPhase.FAILED, result.message)

    async def _detect(self, image: bytes) -> DetectionResult:
        """Toute erreur du détecteur est traitée comme un signal indéterminé"""
        try:
            return await self.detector.detect(image)
        except Exception as e:
            logger.warning(f"Détecteur indisponible: {e}")
            return DetectionIndeterminate(str(e))

    def _skip_liveness(self) -> None:
        if not self.fail_open:
            raise LivenessFailed("Signal de vivacité indisponible. Réessayez avec un meilleur éclairage.")
        logger.warning(f"Probabilités des yeux indisponibles pour {self.user_id}: vivacité ignorée")
        self.liveness_skipped = True

    # Utilitaires

    def _remember(self, state: EyeState) -> None:
        self.left_eye = state.left
        self.right_eye = state.right

    def _record_failure(self, error: Exception) -> None:
        if isinstance(error, NotEnrolledError):
            message = "Aucun enrôlement facial trouvé. Veuillez vous enrôler d'abord."
        elif isinstance(error, CaptureError):
            message = f"Erreur de capture: {error}"
        else:
            message = str(error)
        logger.info(f"Vivacité échouée pour {self.user_id}: {message}")
        self._set_phase(LivenessPhase.FAILED, message)

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set_phase(self, phase: LivenessPhase, message: str) -> None:
        self.phase = phase
        self.message = message
        self.history.append(phase)
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.phase, self.message)
