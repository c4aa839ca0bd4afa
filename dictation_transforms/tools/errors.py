"""
Errors raised by automation tools. Messages are shown to the calling model
verbatim, so they are phrased for a reader without stack traces.
"""


class ToolServerError(Exception):
    kind = "tool"


class ToolGroupDisabledError(ToolServerError):
    kind = "permission"

    def __init__(self, group: str):
        self.group = group
        super().__init__(f"Tool group '{group}' is not enabled for this session.")


class UnknownToolError(ToolServerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool '{name}'.")


class InvalidBundleIdentifierError(ToolServerError):
    def __init__(self):
        super().__init__("A valid bundle identifier is required.")


class ApplicationNotFoundError(ToolServerError):
    def __init__(self, bundle_identifier: str):
        self.bundle_identifier = bundle_identifier
        super().__init__(f"No application was found for bundle identifier '{bundle_identifier}'.")


class LaunchFailedError(ToolServerError):
    def __init__(self, bundle_identifier: str):
        self.bundle_identifier = bundle_identifier
        super().__init__(f"Failed to launch application '{bundle_identifier}'.")


class InvalidURLError(ToolServerError):
    def __init__(self, value: str):
        self.value = value
        super().__init__(f"A valid URL is required (received: {value}).")


class URLOpenFailedError(ToolServerError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Failed to open URL '{url}'.")


class ClipboardUnavailableError(ToolServerError):
    def __init__(self):
        super().__init__("The clipboard could not be read.")


class FrontmostAppUnavailableError(ToolServerError):
    def __init__(self):
        super().__init__("Could not determine the frontmost application.")


class SelectionTimeoutError(ToolServerError):
    def __init__(self):
        super().__init__("Timed out waiting for the selected text to be copied.")


class EmptySelectionError(ToolServerError):
    def __init__(self, app_name: str):
        self.app_name = app_name
        super().__init__(f"The frontmost app ({app_name}) did not provide any selected text.")


class AutomationFailedError(ToolServerError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InvalidToolArgumentError(ToolServerError):
    def __init__(self, name: str, expected: str):
        self.name = name
        super().__init__(f"Argument '{name}' must be {expected}.")
