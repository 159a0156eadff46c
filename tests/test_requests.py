import unittest

import requests
from freezegun import freeze_time

from aws_sign4 import RequestSnapshot, sign
from aws_sign4.requests import AwsAuth

ACCESS_KEY = "AKIDEXAMPLE"
SECRET_KEY = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"
REGION = "us-east-1"

FIXED_TIME = "2023-12-15 12:00:00"


class TestAwsAuth(unittest.TestCase):
    def _auth(self) -> AwsAuth:
        return AwsAuth(REGION, ACCESS_KEY, SECRET_KEY, "sqs")

    @freeze_time(FIXED_TIME)
    def test_get_request(self) -> None:
        url = "https://sqs.us-east-1.amazonaws.com/?Action=ListQueues&Version=2012-11-05"

        prepared = requests.Request("GET", url, auth=self._auth()).prepare()

        expected = RequestSnapshot("GET", url)
        sign(expected, ACCESS_KEY, SECRET_KEY, REGION, "sqs")

        self.assertEqual(prepared.headers["X-Amz-Date"], "20231215T120000Z")
        self.assertEqual(prepared.headers["Host"], "sqs.us-east-1.amazonaws.com")
        self.assertEqual(prepared.headers["Authorization"], expected.headers["Authorization"])

    @freeze_time(FIXED_TIME)
    def test_post_signs_all_headers(self) -> None:
        prepared = requests.Request(
            "POST",
            "https://sqs.us-east-1.amazonaws.com:443/",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data="Action=CreateQueue&QueueName=test",
            auth=self._auth(),
        ).prepare()

        authorization = prepared.headers["Authorization"]
        self.assertIn(
            "Credential=AKIDEXAMPLE/20231215/us-east-1/sqs/aws4_request, ", authorization
        )
        self.assertIn(
            "SignedHeaders=content-length;content-type;host;x-amz-date, ", authorization
        )
        self.assertEqual(prepared.headers["Host"], "sqs.us-east-1.amazonaws.com")
        self.assertEqual(prepared.body, "Action=CreateQueue&QueueName=test")

    @freeze_time(FIXED_TIME)
    def test_streamed_body_is_sent_chunked(self) -> None:
        prepared = requests.Request(
            "PUT",
            "https://s3.us-east-1.amazonaws.com/bucket/key",
            data=(chunk for chunk in [b"ab", b"cd"]),
            auth=self._auth(),
        ).prepare()

        self.assertIn(
            "SignedHeaders=host;transfer-encoding;x-amz-date, ",
            prepared.headers["Authorization"],
        )
        self.assertEqual(prepared.headers["Transfer-Encoding"], "chunked")
        self.assertNotIn("Content-Length", prepared.headers)
        self.assertEqual(b"".join(prepared.body), b"abcd")

    @freeze_time(FIXED_TIME)
    def test_url_with_space(self) -> None:
        prepared = requests.Request(
            "GET", "https://sqs.us-east-1.amazonaws.com/a b", auth=self._auth()
        ).prepare()

        expected = RequestSnapshot("GET", "https://sqs.us-east-1.amazonaws.com/a%20b")
        sign(expected, ACCESS_KEY, SECRET_KEY, REGION, "sqs")

        self.assertEqual(prepared.url, expected.url)
        self.assertEqual(prepared.headers["Authorization"], expected.headers["Authorization"])

    def test_existing_x_amz_date_is_kept(self) -> None:
        prepared = requests.Request(
            "GET",
            "https://sqs.us-east-1.amazonaws.com/",
            headers={"X-Amz-Date": "20131031T103000Z"},
            auth=self._auth(),
        ).prepare()

        self.assertEqual(prepared.headers["X-Amz-Date"], "20131031T103000Z")
        self.assertIn("/20131031/us-east-1/sqs/", prepared.headers["Authorization"])

    @freeze_time(FIXED_TIME)
    def test_resigning_replaces_authorization(self) -> None:
        prepared = requests.Request(
            "GET", "https://sqs.us-east-1.amazonaws.com/", auth=self._auth()
        ).prepare()
        first = prepared.headers["Authorization"]

        AwsAuth(REGION, "OTHERKEY", "othersecret", "sqs")(prepared)
        self.assertNotEqual(prepared.headers["Authorization"], first)

        self._auth()(prepared)
        self.assertEqual(prepared.headers["Authorization"], first)


if __name__ == "__main__":
    unittest.main(verbosity=2)
