class VoiceNavigatorError(RuntimeError):
    pass


class SettingsError(VoiceNavigatorError, ValueError):
    pass


class SpeechInputError(VoiceNavigatorError):
    pass


class BrowserCommandError(VoiceNavigatorError):
    pass
