from .configurations import ConfigurationService
from .dataset_recovery import DatasetRecoveryService
from .datasets import DatasetService
from .model_testing import ModelTestService
