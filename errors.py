class ApiError(Exception):
    """
    Raised from route code; rendered by the app as {"error": message, **payload}.
    """

    def __init__(self, message, status=400, headers=None, **payload):
        super().__init__(message)
        self.message = message
        self.status = status
        self.headers = headers or {}
        self.payload = payload

    def to_dict(self):
        body = {"error": self.message}
        body.update(self.payload)
        return body
