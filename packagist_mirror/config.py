# SPDX-License-Identifer: GPL-3.0-or-later

from pathlib import Path
from string import Template

from aiolimiter import AsyncLimiter

from .breaker import CircuitBreaker
from .download import URL, Proxy
from .download.pool import DownloadPool
from .errors import ConfigException
from .logs import LoggerFactory
from .version import __version__


class Config:
    DEFAULT_CONFIGFILE = "/etc/packagist-mirror/mirror.list"
    DEFAULT_BASE_PATH = "/var/spool/packagist-mirror"

    def __init__(
        self, config_file: Path, default_base_path: str = DEFAULT_BASE_PATH
    ) -> None:
        self._log = LoggerFactory.get_logger(self)
        self._file = config_file
        self._mirrors: list[str] = []

        self._variables: dict[str, str] = {
            "base_path": default_base_path,
            "mirror_path": "$base_path/public",
            "var_path": "$base_path/var",
            "main_mirror": "https://repo.packagist.org",
            "nthreads": str(DownloadPool.DEFAULT_POOL_SIZE),
            "max_host_errors": str(CircuitBreaker.DEFAULT_THRESHOLD),
            "index_retries": "3",
            "uvloop": "1",
            "append_logs": "off",
            "limit_rate": "100m",
            "http2_disable": "off",
            "use_proxy": "off",
            "http_proxy": "",
            "https_proxy": "",
            "proxy_user": "",
            "proxy_password": "",
            "http_user_agent": f"packagist-mirror/{__version__}",
            "no_check_certificate": "0",
            "certificate": "",
            "private_key": "",
            "ca_certificate": "",
            "prometheus_enable": "off",
            "prometheus_host": "localhost",
            "prometheus_port": "8000",
        }

        self._parse_config_file()
        self._substitute_variables()

    def _parse_config_file(self):
        with open(self._file, "rt", encoding="utf-8") as fp:
            for line in fp:
                line = line.strip()

                if not line or any(line.startswith(prefix) for prefix in ("#", ";")):
                    continue

                command, _, arguments = line.partition(" ")
                arguments = arguments.strip()

                match command:
                    case "set":
                        key, _, value = arguments.partition(" ")
                        if not key:
                            self._log.warning(f"Incomplete `set` line: {line}")
                            continue

                        self._variables[key] = value.strip()
                    case "mirror":
                        if not arguments:
                            self._log.warning(f"Missing mirror URL in config: {line}")
                            continue

                        for url in arguments.split():
                            url = url.rstrip("/")
                            if url not in self._mirrors:
                                self._mirrors.append(url)
                    case _:
                        self._log.warning(f"Unknown line in config: {line}")

    def _substitute_variables(self):
        max_tries = 16
        template_found = False
        while max_tries == 16 or template_found:
            template_found = False
            for key, value in self._variables.items():
                if "$" not in value:
                    continue

                try:
                    self._variables[key] = Template(value).substitute(
                        self._variables
                    )
                except (KeyError, ValueError) as ex:
                    raise ConfigException(
                        f"Unable to substitute variables in `{key}`: {ex}"
                    ) from ex

                template_found = True

            max_tries -= 1
            if max_tries < 1:
                raise ConfigException(
                    "packagist-mirror: too many substitutions while evaluating"
                    " variables"
                )

    def __getitem__(self, key: str) -> str:
        if key not in self._variables:
            raise KeyError(
                f"Variable {key} is not defined in the config file {self._file}"
            )

        return self._variables[key]

    def create_working_directories(self):
        for variable in ("mirror_path", "base_path", "var_path"):
            path = Path(self[variable])
            path.mkdir(parents=True, exist_ok=True)

    def init_log_files(self):
        if self.append_logs:
            LoggerFactory.enable_append_logs()

        LoggerFactory.set_log_file(self.var_path / "packagist-mirror.log")

    def validate(self):
        """Evaluate every typed value once so that mistakes surface at startup"""
        _ = (
            self.main_mirror,
            self.mirrors,
            self.nthreads,
            self.max_host_errors,
            self.index_retries,
            self.limit_rate,
            self.prometheus_port,
        )

    def get_bool(self, key: str) -> bool:
        return bool(self[key]) and self[key].lower() not in ("0", "off", "no")

    def get_path(self, key: str) -> Path:
        return Path(self[key])

    @staticmethod
    def get_http_url(value: str, name: str) -> URL:
        url = URL.from_string(value)
        if url.scheme not in ("http", "https") or not url.get_host():
            raise ConfigException(f"Unsupported {name} URL: {value}")

        return url

    def get_int(self, key: str, minimum: int = 0) -> int:
        try:
            value = int(self[key])
        except ValueError as ex:
            raise ConfigException(f"Wrong `{key}` value: {self[key]}") from ex

        if value < minimum:
            raise ConfigException(
                f"Wrong `{key}` value: {value}. Minimum value is {minimum}"
            )

        return value

    def get_size(self, key: str) -> int:
        suffix = self[key][-1:]

        try:
            if not suffix.isnumeric():
                value = int(self[key][:-1])
                match suffix.lower():
                    case "k":
                        return value * 1024
                    case "m":
                        return value * 1024 * 1024
                    case _:
                        raise ConfigException(
                            f"Wrong `{key}` configuration suffix: {self[key]}."
                            " Allowed suffixes: k, m"
                        )

            return int(self[key])
        except ValueError as ex:
            raise ConfigException(f"Wrong `{key}` value: {self[key]}") from ex

    @property
    def base_path(self) -> Path:
        return self.get_path("base_path")

    @property
    def mirror_path(self) -> Path:
        return self.get_path("mirror_path")

    @property
    def var_path(self) -> Path:
        return self.get_path("var_path")

    @property
    def main_mirror(self) -> URL:
        return self.get_http_url(self["main_mirror"], "main mirror")

    @property
    def mirrors(self) -> list[str]:
        for mirror in self._mirrors:
            self.get_http_url(mirror, "mirror")

        return self._mirrors.copy()

    @property
    def nthreads(self) -> int:
        return self.get_int("nthreads", minimum=1)

    @property
    def max_host_errors(self) -> int:
        return self.get_int("max_host_errors", minimum=1)

    @property
    def index_retries(self) -> int:
        return max(1, self.get_int("index_retries"))

    @property
    def use_uvloop(self) -> bool:
        return self.get_bool("uvloop")

    @property
    def append_logs(self) -> bool:
        return self.get_bool("append_logs")

    @property
    def limit_rate(self) -> int:
        return self.get_size("limit_rate")

    @property
    def rate_limiter(self) -> AsyncLimiter | None:
        if not self.limit_rate:
            return None

        return AsyncLimiter(self.limit_rate * 60, 60)

    @property
    def http2_disable(self) -> bool:
        return self.get_bool("http2_disable")

    @property
    def proxy(self) -> Proxy:
        return Proxy(
            use_proxy=self.get_bool("use_proxy"),
            http_proxy=self["http_proxy"],
            https_proxy=self["https_proxy"],
            username=self._variables.get("proxy_user"),
            password=self._variables.get("proxy_password"),
        )

    @property
    def user_agent(self) -> str:
        return self["http_user_agent"]

    @property
    def verify_ca_certificate(self) -> bool | str:
        if self.get_bool("no_check_certificate"):
            return False

        if self._variables.get("ca_certificate"):
            return self["ca_certificate"]

        return True

    @property
    def client_certificate(self) -> str:
        return self["certificate"]

    @property
    def client_private_key(self) -> str:
        return self["private_key"]

    @property
    def prometheus_enable(self) -> bool:
        return self.get_bool("prometheus_enable")

    @property
    def prometheus_host(self) -> str:
        return self["prometheus_host"]

    @property
    def prometheus_port(self) -> int:
        return self.get_int("prometheus_port")
