"""Amazon Polly provider - neural voices, synchronous requests and S3-backed tasks."""

import logging
import threading
from typing import Optional

from audiobookforge.blobstore import parse_s3_uri
from audiobookforge.tts import register_provider
from audiobookforge.tts.base import (
    ProviderConfigError,
    ProviderError,
    ProviderTask,
    TransientProviderError,
    TTSProvider,
)

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = {
    "ThrottlingException",
    "Throttling",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ServiceFailureException",
    "ServiceUnavailableException",
    "InternalFailure",
}
_CONFIG_CODES = {
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "ExpiredTokenException",
    "InvalidS3BucketException",
}
_TASK_STATES = {
    "scheduled": "in_progress",
    "inProgress": "in_progress",
    "completed": "completed",
    "failed": "failed",
}


def _translate_error(exc: Exception) -> ProviderError:
    """Map a botocore exception onto the provider error hierarchy."""
    from botocore.exceptions import (
        BotoCoreError,
        ClientError,
        ConnectionError as BotoConnectionError,
        NoCredentialsError,
        PartialCredentialsError,
    )

    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in _TRANSIENT_CODES:
            return TransientProviderError(f"Polly {code}: {message}")
        if code in _CONFIG_CODES:
            return ProviderConfigError(f"Polly {code}: {message}")
        return ProviderError(f"Polly {code}: {message}")
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return ProviderConfigError(f"AWS credentials not configured: {exc}")
    if isinstance(exc, BotoConnectionError):
        return TransientProviderError(f"Polly connection error: {exc}")
    if isinstance(exc, BotoCoreError):
        return ProviderError(f"Polly error: {exc}")
    return ProviderError(str(exc))


@register_provider("polly")
class PollyProvider(TTSProvider):
    """Amazon Polly. Chapters that fit one task go through StartSpeechSynthesisTask."""

    max_request_size = 2800
    size_unit = "chars"
    supports_markup = True
    supports_tasks = True
    task_size_limit = 100_000

    def __init__(self, settings=None):
        super().__init__(settings)
        self._session = None
        self._polly = None
        self._s3 = None
        self._client_lock = threading.Lock()

    def initialize(self) -> None:
        try:
            import boto3
        except ImportError as e:
            raise ProviderConfigError("boto3 is required for Amazon Polly") from e

        if boto3.session.Session().get_credentials() is None:
            raise ProviderConfigError(
                "AWS credentials not configured "
                "(set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY)"
            )

    def _make_client(self, service: str):
        # Caller holds _client_lock.
        if self._session is None:
            import boto3
            self._session = boto3.session.Session(region_name=self.settings.aws_region)
        return self._session.client(service)

    @property
    def polly(self):
        if self._polly is None:
            with self._client_lock:
                if self._polly is None:
                    self._polly = self._make_client("polly")
        return self._polly

    @property
    def s3(self):
        if self._s3 is None:
            with self._client_lock:
                if self._s3 is None:
                    self._s3 = self._make_client("s3")
        return self._s3

    def close(self) -> None:
        with self._client_lock:
            self._polly = None
            self._s3 = None
            self._session = None

    def _sample_rate(self) -> str:
        return "22050" if self.settings.polly_engine == "standard" else "24000"

    @staticmethod
    def _text_type(text: str) -> str:
        return "ssml" if text.lstrip().startswith("<speak") else "text"

    def synthesize(self, text: str, voice_id: str, rate: float = 1.0, pitch: float = 0.0) -> bytes:
        try:
            response = self.polly.synthesize_speech(
                Text=text,
                TextType=self._text_type(text),
                VoiceId=voice_id,
                Engine=self.settings.polly_engine,
                OutputFormat="mp3",
                SampleRate=self._sample_rate(),
            )
        except Exception as e:
            raise _translate_error(e) from e

        stream = response.get("AudioStream")
        if stream is None:
            raise ProviderError("No audio stream received from Polly")
        try:
            return stream.read()
        finally:
            stream.close()

    def start_task(self, text: str, voice_id: str, rate: float = 1.0, pitch: float = 0.0) -> str:
        bucket = self.settings.s3_bucket_name
        if not bucket:
            raise ProviderConfigError("S3_BUCKET_NAME is not configured")

        try:
            response = self.polly.start_speech_synthesis_task(
                Text=text,
                TextType=self._text_type(text),
                VoiceId=voice_id,
                Engine=self.settings.polly_engine,
                OutputFormat="mp3",
                SampleRate=self._sample_rate(),
                OutputS3BucketName=bucket,
                OutputS3KeyPrefix="audiobooks/",
            )
        except Exception as e:
            raise _translate_error(e) from e

        task_id = response.get("SynthesisTask", {}).get("TaskId")
        if not task_id:
            raise ProviderError("No TaskId received from Polly")
        logger.info("Started Polly task %s", task_id)
        return task_id

    def get_task_status(self, handle: str) -> ProviderTask:
        try:
            response = self.polly.get_speech_synthesis_task(TaskId=handle)
        except Exception as e:
            raise _translate_error(e) from e

        task = response.get("SynthesisTask") or {}
        return ProviderTask(
            handle=handle,
            state=_TASK_STATES.get(task.get("TaskStatus", ""), "in_progress"),
            output_uri=task.get("OutputUri"),
            reason=task.get("TaskStatusReason"),
        )

    def fetch_task_audio(self, task: ProviderTask) -> bytes:
        if not task.output_uri:
            raise ProviderError(f"Polly task {task.handle} has no output URI")
        bucket, key = parse_s3_uri(task.output_uri)
        try:
            obj = self.s3.get_object(Bucket=bucket, Key=key)
        except Exception as e:
            raise _translate_error(e) from e
        return obj["Body"].read()

    def list_voices(self, language: Optional[str] = None) -> list[dict]:
        kwargs = {"IncludeAdditionalLanguageCodes": True}
        if language and "-" in language:
            kwargs["LanguageCode"] = language

        voices = []
        try:
            while True:
                response = self.polly.describe_voices(**kwargs)
                voices.extend(response.get("Voices", []))
                token = response.get("NextToken")
                if not token:
                    break
                kwargs["NextToken"] = token
        except Exception as e:
            raise _translate_error(e) from e

        result = []
        for v in voices:
            locale = v.get("LanguageCode", "")
            if language and not locale.lower().startswith(language.lower()):
                continue
            for engine in v.get("SupportedEngines") or ["standard"]:
                result.append({
                    "name": v.get("Id", ""),
                    "language": locale,
                    "gender": v.get("Gender", ""),
                    "engine": engine,
                })
        return result

    @property
    def name(self) -> str:
        return "Amazon Polly"
