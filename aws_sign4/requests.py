import requests.auth

from aws_sign4 import AwsRequestSigner, RequestSnapshot

__all__ = ["AwsAuth"]

COPIED_HEADERS = ("Host", "X-Amz-Date", "Authorization")


class AwsAuth(requests.auth.AuthBase):
    def __init__(
        self, region: str, access_key_id: str, secret_access_key: str, service: str
    ) -> None:
        """
        Intialize the authentication helper for requests. Use this with the
        auth argument of the requests methods, or assign it to a session's
        auth property.

        :param region: The AWS region to connect to.
        :param access_key_id: The AWS access key id to use for authentication.
        :param secret_access_key: The AWS secret access key to use for authentication.
        :param service: The service to connect to (f.e. `'sqs'`).
        """
        self.request_signer = AwsRequestSigner(
            region, access_key_id, secret_access_key, service
        )

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        snapshot = RequestSnapshot.from_prepared_request(request)
        signed = self.request_signer.sign(snapshot)

        # Send Host and X-Amz-Date exactly as they were signed.
        for name in COPIED_HEADERS:
            if name in signed.headers:
                request.headers[name] = signed.headers[name]
        return request
