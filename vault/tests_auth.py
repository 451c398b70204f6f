from django.contrib.auth import get_user_model
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient, APITestCase
from rest_framework_simplejwt.tokens import RefreshToken

from .testing import GB, access_token_for, create_user, make_partition, set_used

User = get_user_model()


class AuthenticationAPITests(APITestCase):
    """
    Test suite for authentication endpoints:
    - POST /api/auth/register/
    - POST /api/auth/login/
    - POST /api/auth/logout/
    - POST /api/auth/token/refresh/
    """

    def setUp(self):
        """Set up test data"""
        self.register_url = reverse('register')
        self.login_url = reverse('login')
        self.logout_url = reverse('logout')
        self.refresh_url = reverse('token_refresh')

        self.valid_user_data = {
            'username': 'testuser',
            'email': 'test@example.com',
            'password': 'securepassword123',
            'password_confirm': 'securepassword123',
            'first_name': 'Test',
            'last_name': 'User'
        }

    def test_user_registration_success(self):
        """Test registration returns tokens and the default partitions"""
        response = self.client.post(self.register_url, self.valid_user_data, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertIn('access', response.data)
        self.assertIn('refresh', response.data)
        self.assertEqual(response.data['user']['username'], 'testuser')
        self.assertEqual(response.data['user']['email'], 'test@example.com')
        self.assertNotIn('password', response.data['user'])

        partitions = response.data['partitions']
        self.assertEqual([p['name'] for p in partitions], ['personal', 'work'])
        self.assertTrue(all(p['quota'] == 5 * GB and p['used'] == 0 for p in partitions))

        user = User.objects.get(username='testuser')
        self.assertTrue(user.check_password('securepassword123'))
        self.assertTrue(user.partitions_provisioned)

    def test_user_registration_password_mismatch(self):
        """Test registration with mismatched passwords"""
        data = dict(self.valid_user_data, password_confirm='differentpassword')

        response = self.client.post(self.register_url, data, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(User.objects.filter(username='testuser').exists())

    def test_user_registration_weak_password(self):
        """Test registration with a password the validators reject"""
        data = dict(self.valid_user_data, password='123', password_confirm='123')

        response = self.client.post(self.register_url, data, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('password', response.data)

    def test_user_registration_duplicate_username(self):
        """Test registration with an existing username"""
        create_user('testuser')

        response = self.client.post(self.register_url, self.valid_user_data, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('username', response.data)

    def test_user_registration_duplicate_email(self):
        """Test registration with an existing email"""
        User.objects.create_user(username='someoneelse', email='test@example.com', password='testpass123')

        response = self.client.post(self.register_url, self.valid_user_data, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('email', response.data)

    def test_user_login_success(self):
        """Test successful login"""
        create_user('testuser', password='securepassword123')

        response = self.client.post(
            self.login_url, {'username': 'testuser', 'password': 'securepassword123'}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.data)
        self.assertIn('refresh', response.data)
        self.assertEqual(response.data['user']['username'], 'testuser')

    def test_user_login_invalid_credentials(self):
        """Test login with a wrong password"""
        create_user('testuser', password='securepassword123')

        response = self.client.post(self.login_url, {'username': 'testuser', 'password': 'nope'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertNotIn('access', response.data)

    def test_user_logout_success(self):
        """Test logout blacklists the refresh token"""
        user = create_user('testuser')
        refresh = RefreshToken.for_user(user)
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')

        response = self.client.post(self.logout_url, {'refresh': str(refresh)}, format='json')
        self.assertEqual(response.status_code, status.HTTP_205_RESET_CONTENT)

        response = self.client.post(self.refresh_url, {'refresh': str(refresh)}, format='json')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_user_logout_invalid_token(self):
        """Test logout with a malformed refresh token"""
        user = create_user('testuser')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(user)}')

        response = self.client.post(self.logout_url, {'refresh': 'not-a-token'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('refresh', response.data)

    def test_user_logout_unauthenticated(self):
        """Test logout requires a token"""
        response = self.client.post(self.logout_url, {'refresh': 'x'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_token_refresh_success(self):
        """Test refreshing an access token"""
        refresh = RefreshToken.for_user(create_user('testuser'))

        response = self.client.post(self.refresh_url, {'refresh': str(refresh)}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.data)

    def test_invalid_access_token_authentication(self):
        """Test a garbage bearer token is rejected"""
        self.client.credentials(HTTP_AUTHORIZATION='Bearer invalid_token')

        response = self.client.get(reverse('user_profile'))

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)


class UserProfileAPITests(APITestCase):
    """
    Test suite for GET /api/users/me/
    """

    def setUp(self):
        self.profile_url = reverse('user_profile')
        self.user = create_user('testuser', first_name='Test', last_name='User')

    def test_user_profile_success(self):
        """Test the profile totals storage across partitions"""
        make_partition(self.user, 'projects', quota=1000, used=100)
        set_used(self.user, 'personal', 2000)
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')

        response = self.client.get(self.profile_url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['username'], 'testuser')
        self.assertEqual(response.data['first_name'], 'Test')
        self.assertEqual(response.data['storage_quota'], 10 * GB + 1000)
        self.assertEqual(response.data['storage_used'], 2100)
        self.assertEqual([p['name'] for p in response.data['partitions']], ['personal', 'work', 'projects'])

    def test_user_profile_unauthenticated(self):
        """Test the profile requires a token"""
        response = APIClient().get(self.profile_url)

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_user_profile_is_per_user(self):
        """Test each user only sees their own partitions"""
        other = create_user('other')
        make_partition(other, 'secret', quota=1000)
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {access_token_for(self.user)}')

        response = self.client.get(self.profile_url)

        self.assertNotIn('secret', [p['name'] for p in response.data['partitions']])
