from __future__ import annotations


class GradebookRenderError(Exception):
    def __init__(self, detail: str, *, status_code: int = 400, code: str = "pdf_generation_failed"):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.code = code

    def as_payload(self) -> dict[str, str]:
        return {"error": self.code, "message": self.detail}


class BrowserLaunchError(GradebookRenderError):
    def __init__(self, detail: str = "Headless browser could not be launched."):
        super().__init__(detail, status_code=500, code="browser_launch_failed")


class SigningError(Exception):
    def __init__(self, detail: str, *, code: str, status_code: int = 400):
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code

    def as_payload(self) -> dict[str, str]:
        return {"error": self.code, "message": self.detail}
