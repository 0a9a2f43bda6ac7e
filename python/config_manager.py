"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration (password comes from DB_PASSWORD only)"""
    host: str = "localhost"
    port: int = 5432
    user: str = "kyc_user"
    name: str = "kyc_database"
    url: str = ""
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False


@dataclass
class PipelineConfig:
    """Case pipeline configuration"""
    case_number_prefix: str = "KYC"
    case_number_attempts: int = 5
    check_types: List[str] = field(default_factory=lambda: ['pep', 'sanctions', 'adverse_media'])
    default_list_limit: int = 50
    max_list_limit: int = 500
    recent_cases_limit: int = 5
    default_risk_level: str = "medium"
    # Applied to companies created implicitly from a case
    placeholder_legal_form: str = "GmbH"
    placeholder_country: str = "Germany"
    placeholder_registration_prefix: str = "PENDING-"


@dataclass
class RegistryConfig:
    """External company registry lookup"""
    search_url: str = "https://handelsregister.api.bund.dev/search"
    timeout_seconds: float = 8.0
    min_query_length: int = 3
    enabled: bool = True
    demo_address: str = "Musterstraße 1, 10115 Berlin"
    demo_city: str = "Berlin"
    demo_postal_code: str = "10115"


@dataclass
class ScreeningConfig:
    """Screening provider selection"""
    provider: str = "static"  # static, http
    endpoint_url: str = ""
    timeout_seconds: float = 10.0
    api_key_env: str = "SCREENING_API_KEY"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/kyc_pipeline.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class MonitoringSettings:
    """Query monitoring thresholds"""
    slow_query_threshold_ms: float = 1000.0
    warning_threshold_ms: float = 500.0
    enable_prometheus: bool = True


VALID_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
VALID_PROVIDERS = ('static', 'http')


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.database: DatabaseConfig = DatabaseConfig()
        self.pipeline: PipelineConfig = PipelineConfig()
        self.registry: RegistryConfig = RegistryConfig()
        self.screening: ScreeningConfig = ScreeningConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.monitoring: MonitoringSettings = MonitoringSettings()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_database()
        self._parse_pipeline()
        self._parse_registry()
        self._parse_screening()
        self._parse_logging()
        self._parse_monitoring()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        default = DatabaseConfig()
        self.database = DatabaseConfig(
            host=cfg.get('host', default.host),
            port=cfg.get('port', default.port),
            user=cfg.get('user', default.user),
            name=cfg.get('name', default.name),
            url=cfg.get('url', default.url) or "",
            pool_size=cfg.get('pool_size', default.pool_size),
            max_overflow=cfg.get('max_overflow', default.max_overflow),
            pool_timeout=cfg.get('pool_timeout', default.pool_timeout),
            pool_recycle=cfg.get('pool_recycle', default.pool_recycle),
            echo=cfg.get('echo', default.echo)
        )

    def _parse_pipeline(self) -> None:
        """Parse case pipeline configuration"""
        cfg = self._raw_config.get('pipeline', {})
        default = PipelineConfig()
        self.pipeline = PipelineConfig(
            case_number_prefix=cfg.get('case_number_prefix', default.case_number_prefix),
            case_number_attempts=cfg.get('case_number_attempts', default.case_number_attempts),
            check_types=list(cfg.get('check_types', default.check_types)),
            default_list_limit=cfg.get('default_list_limit', default.default_list_limit),
            max_list_limit=cfg.get('max_list_limit', default.max_list_limit),
            recent_cases_limit=cfg.get('recent_cases_limit', default.recent_cases_limit),
            default_risk_level=cfg.get('default_risk_level', default.default_risk_level),
            placeholder_legal_form=cfg.get('placeholder_legal_form', default.placeholder_legal_form),
            placeholder_country=cfg.get('placeholder_country', default.placeholder_country),
            placeholder_registration_prefix=cfg.get(
                'placeholder_registration_prefix', default.placeholder_registration_prefix
            )
        )

    def _parse_registry(self) -> None:
        """Parse registry lookup configuration"""
        cfg = self._raw_config.get('registry', {})
        default = RegistryConfig()
        self.registry = RegistryConfig(
            search_url=cfg.get('search_url', default.search_url),
            timeout_seconds=cfg.get('timeout_seconds', default.timeout_seconds),
            min_query_length=cfg.get('min_query_length', default.min_query_length),
            enabled=cfg.get('enabled', default.enabled),
            demo_address=cfg.get('demo_address', default.demo_address),
            demo_city=cfg.get('demo_city', default.demo_city),
            demo_postal_code=cfg.get('demo_postal_code', default.demo_postal_code)
        )

    def _parse_screening(self) -> None:
        """Parse screening provider configuration"""
        cfg = self._raw_config.get('screening', {})
        default = ScreeningConfig()
        self.screening = ScreeningConfig(
            provider=cfg.get('provider', default.provider),
            endpoint_url=cfg.get('endpoint_url', default.endpoint_url) or "",
            timeout_seconds=cfg.get('timeout_seconds', default.timeout_seconds),
            api_key_env=cfg.get('api_key_env', default.api_key_env)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/kyc_pipeline.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_monitoring(self) -> None:
        cfg = self._raw_config.get('monitoring', {})
        default = MonitoringSettings()
        self.monitoring = MonitoringSettings(
            slow_query_threshold_ms=cfg.get('slow_query_threshold_ms', default.slow_query_threshold_ms),
            warning_threshold_ms=cfg.get('warning_threshold_ms', default.warning_threshold_ms),
            enable_prometheus=cfg.get('enable_prometheus', default.enable_prometheus)
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            },
            'pipeline': {
                'case_number_prefix': self.pipeline.case_number_prefix,
                'check_types': list(self.pipeline.check_types),
                'default_list_limit': self.pipeline.default_list_limit,
                'max_list_limit': self.pipeline.max_list_limit,
                'recent_cases_limit': self.pipeline.recent_cases_limit
            },
            'registry': {
                'search_url': self.registry.search_url,
                'timeout_seconds': self.registry.timeout_seconds,
                'min_query_length': self.registry.min_query_length,
                'enabled': self.registry.enabled
            },
            'screening': {
                'provider': self.screening.provider,
                'endpoint_url': self.screening.endpoint_url,
                'timeout_seconds': self.screening.timeout_seconds
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors = []

        if not self.pipeline.check_types:
            errors.append("pipeline.check_types must not be empty")
        if len(set(self.pipeline.check_types)) != len(self.pipeline.check_types):
            errors.append("pipeline.check_types contains duplicates")
        if self.pipeline.case_number_attempts < 1:
            errors.append("pipeline.case_number_attempts must be >= 1")
        if not 1 <= self.pipeline.default_list_limit <= self.pipeline.max_list_limit:
            errors.append("pipeline.default_list_limit must be between 1 and max_list_limit")
        if self.registry.timeout_seconds <= 0:
            errors.append("registry.timeout_seconds must be positive")
        if self.registry.min_query_length < 1:
            errors.append("registry.min_query_length must be >= 1")
        if self.screening.provider not in VALID_PROVIDERS:
            errors.append(f"screening.provider must be one of {VALID_PROVIDERS}")
        if self.screening.provider == 'http' and not self.screening.endpoint_url:
            errors.append("screening.endpoint_url is required for the http provider")
        if self.screening.timeout_seconds <= 0:
            errors.append("screening.timeout_seconds must be positive")
        if str(self.logging.level).upper() not in VALID_LOG_LEVELS:
            errors.append(f"logging.level must be one of {VALID_LOG_LEVELS}")

        if errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
